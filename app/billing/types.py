from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    provider: str
    provider_event_id: str
    event_type: str


@dataclass(frozen=True, slots=True)
class NormalizedPaymentEvent:
    provider: str
    provider_event_id: str
    type: str
    occurred_at: datetime
    customer_ref: str | None = None
    subscription_ref: str | None = None
    payment_ref: str | None = None
    plan_key: str | None = None
    price_key: str | None = None
    interval: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    subscription_status: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool = False
    user_hint: str | None = None
    raw_ref: int | None = None
    origin: str = "webhook"


@dataclass(slots=True)
class JournalDeliveryResult:
    journal_entry_id: int
    is_first_delivery: bool
    delivery_attempts: int


@dataclass(slots=True)
class GrantOutcome:
    action: str
    user_id: UUID | None = None
    entitlement_ids: list[UUID] = field(default_factory=list)
    ledger_entry_ids: list[int] = field(default_factory=list)
    idempotent_replay: bool = False
    detail: str | None = None

    @property
    def mutated(self) -> bool:
        return bool(self.ledger_entry_ids)


@dataclass(slots=True)
class IngestResult:
    journal: JournalDeliveryResult
    process: ProcessResult | None = None


@dataclass(frozen=True, slots=True)
class EffectivePlan:
    plan_key: str
    entitlement_id: UUID | None
    valid_until: datetime | None


@dataclass(slots=True)
class ProcessResult:
    journal_entry_id: int
    status: str
    outcome: GrantOutcome | None = None
    finding_id: UUID | None = None
