from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import (
    ACTOR_PROVIDER,
    ACTOR_RECONCILIATION,
    EVENT_DISPUTE_OPENED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_PAYMENT_SUCCEEDED,
    ORIGIN_RECONCILIATION,
)
from app.billing.errors import InvariantViolationError
from app.billing.plans import PlanCatalog
from app.billing.types import GrantOutcome, NormalizedPaymentEvent
from app.db.models.entitlements import Entitlement

from .transitions import Transition
from .writer import write_transition


@dataclass(slots=True)
class EventContext:
    """Everything one event application needs, shared by the per-type handlers."""

    session: AsyncSession
    event: NormalizedPaymentEvent
    catalog: PlanCatalog
    now_utc: datetime
    event_key: str

    @property
    def actor(self) -> str:
        if self.event.origin == ORIGIN_RECONCILIATION:
            return ACTOR_RECONCILIATION
        return ACTOR_PROVIDER


def event_key(event: NormalizedPaymentEvent) -> str:
    """Natural idempotency key of an event's side effects.

    Payment-scoped events key on the payment reference, so a payment seen both
    through a webhook and through reconciliation is applied once.
    """
    if event.payment_ref is not None and event.type in {
        EVENT_PAYMENT_SUCCEEDED,
        EVENT_PAYMENT_REFUNDED,
        EVENT_DISPUTE_OPENED,
    }:
        return f"{event.provider}:{event.type}:{event.payment_ref}"
    return f"{event.provider}:event:{event.provider_event_id}"


async def record(
    ctx: EventContext,
    outcome: GrantOutcome,
    *,
    entitlement: Entitlement | None,
    transition: Transition,
    metadata: dict[str, object] | None = None,
) -> Entitlement:
    if outcome.user_id is None:
        raise InvariantViolationError(
            "entitlement change has no user",
            context={
                "provider": ctx.event.provider,
                "provider_event_id": ctx.event.provider_event_id,
                "action": transition.action,
            },
        )
    entitlement_id = entitlement.id if entitlement is not None else "new"
    written, entry = await write_transition(
        ctx.session,
        user_id=outcome.user_id,
        entitlement=entitlement,
        transition=transition,
        actor=ctx.actor,
        idempotency_key=f"{ctx.event_key}:{transition.action}:{entitlement_id}",
        now_utc=ctx.now_utc,
        event=ctx.event,
        metadata=metadata,
    )
    outcome.entitlement_ids.append(written.id)
    outcome.ledger_entry_ids.append(entry.id)
    return written
