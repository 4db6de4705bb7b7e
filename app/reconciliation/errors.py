from __future__ import annotations

from app.billing.errors import TransientIngestError


class ReconciliationError(Exception):
    pass


class ProviderFetchError(ReconciliationError, TransientIngestError):
    """The provider's reporting API could not be read."""


class JobNotFoundError(ReconciliationError):
    pass


class JobNotRunnableError(ReconciliationError):
    def __init__(self, status: str | None) -> None:
        super().__init__(f"job is not runnable from status {status!r}")
        self.status = status


class FindingNotFoundError(ReconciliationError):
    pass


class RunCancelledError(ReconciliationError):
    pass
