from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True, slots=True)
class ProviderRecord:
    """One transaction as reported by the provider's own reporting API.

    ``payload`` is shaped like the provider's webhook delivery so that healing can
    journal it and run it through the normal ingestion path.
    """

    provider: str
    record_id: str
    kind: str
    status: str
    payment_ref: str
    occurred_at: datetime
    amount_minor: int | None = None
    currency: str | None = None
    event_id: str | None = None
    payload: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class InternalPaymentRecord:
    journal_entry_id: int
    provider: str
    provider_event_id: str
    kind: str
    status: str
    event_type: str
    payment_ref: str | None
    occurred_at: datetime
    amount_minor: int | None
    currency: str | None
    processed: bool
    applied: bool
    live_entitlement_ids: tuple[UUID, ...] = ()
    funded_entitlement_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True, slots=True)
class EntitlementRecord:
    entitlement_id: UUID
    user_id: UUID
    plan_key: str
    source: str
    status: str
    payment_refs: tuple[str, ...]
    ledger_entries: int


@dataclass(frozen=True, slots=True)
class HealAction:
    kind: str
    provider_record: ProviderRecord | None = None
    journal_entry_id: int | None = None


@dataclass(slots=True)
class DiffFinding:
    diff_type: str
    suggested_action: str
    provider: str | None
    provider_event_id: str | None
    auto_healable: bool = False
    heal: HealAction | None = None
    journal_entry_id: int | None = None
    subscription_ref: str | None = None
    user_id: UUID | None = None
    entitlement_id: UUID | None = None
    expected_amount_minor: int | None = None
    actual_amount_minor: int | None = None
    expected_currency: str | None = None
    actual_currency: str | None = None
    expected_status: str | None = None
    actual_status: str | None = None
    details: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class DiffResult:
    findings: list[DiffFinding]
    scanned_provider: int = 0
    scanned_internal: int = 0
    matched: int = 0


@dataclass(slots=True)
class RunSummary:
    job_id: UUID
    run_id: UUID
    status: str
    stats: dict[str, int]
    error: str | None = None
