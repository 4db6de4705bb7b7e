from __future__ import annotations

from enum import Enum


class BillingError(Exception):
    pass


class TransientIngestError(BillingError):
    """Store or provider unavailable; the delivery must be retried."""


class NormalizationErrorKind(str, Enum):
    UNMAPPED_PLAN = "UnmappedPlan"
    MALFORMED_PAYLOAD = "MalformedPayload"
    UNKNOWN_CUSTOMER = "UnknownCustomer"
    UNSUPPORTED_PROVIDER = "UnsupportedProvider"


class NormalizationError(BillingError):
    def __init__(self, kind: NormalizationErrorKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


class InvariantViolationError(BillingError):
    def __init__(self, message: str, *, context: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class PolicyBlockError(BillingError):
    pass


class EntitlementNotFoundError(BillingError):
    pass
