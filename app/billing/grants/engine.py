from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import (
    EVENT_DISPUTE_OPENED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CANCELED,
    EVENT_SUBSCRIPTION_UPDATED,
)
from app.billing.plans import PlanCatalog
from app.billing.resolver import refresh_current_plan
from app.billing.types import GrantOutcome, NormalizedPaymentEvent
from app.db.repo.ledger_repo import LedgerRepo

from .common import EventContext, event_key
from .payments import apply_payment_reversal, apply_payment_succeeded
from .subscriptions import apply_subscription_canceled, apply_subscription_updated

logger = structlog.get_logger(__name__)

_HANDLERS = {
    EVENT_PAYMENT_SUCCEEDED: apply_payment_succeeded,
    EVENT_PAYMENT_REFUNDED: apply_payment_reversal,
    EVENT_DISPUTE_OPENED: apply_payment_reversal,
    EVENT_SUBSCRIPTION_UPDATED: apply_subscription_updated,
    EVENT_SUBSCRIPTION_CANCELED: apply_subscription_canceled,
}


async def apply_event(
    session: AsyncSession,
    *,
    event: NormalizedPaymentEvent,
    catalog: PlanCatalog,
    now_utc: datetime,
) -> GrantOutcome:
    """Apply one normalized event inside the caller's transaction.

    Re-applying an event whose side effects are already in the ledger is a no-op.
    """
    handler = _HANDLERS.get(event.type)
    if handler is None:
        return GrantOutcome(action="ignored", detail=event.type)

    key = event_key(event)
    if await LedgerRepo.has_entries_with_key_prefix(session, f"{key}:"):
        return GrantOutcome(action="noop", idempotent_replay=True, detail="already_applied")

    ctx = EventContext(
        session=session,
        event=event,
        catalog=catalog,
        now_utc=now_utc,
        event_key=key,
    )
    outcome = await handler(ctx)
    if outcome.mutated and outcome.user_id is not None:
        await refresh_current_plan(session, user_id=outcome.user_id, now_utc=now_utc)

    logger.info(
        "billing_event_applied",
        provider=event.provider,
        provider_event_id=event.provider_event_id,
        event_type=event.type,
        origin=event.origin,
        action=outcome.action,
        user_id=str(outcome.user_id) if outcome.user_id is not None else None,
        ledger_entries=len(outcome.ledger_entry_ids),
    )
    return outcome
