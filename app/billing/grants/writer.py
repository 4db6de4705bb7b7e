from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import ACTOR_PROVIDER, ACTOR_RECONCILIATION, MANUAL_SOURCES
from app.billing.errors import PolicyBlockError
from app.billing.types import NormalizedPaymentEvent
from app.db.models.entitlements import Entitlement
from app.db.models.ledger_entries import LedgerEntry
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.ledger_repo import LedgerRepo

from .transitions import Transition

logger = structlog.get_logger(__name__)


def ensure_actor_may_mutate(actor: str, source: str) -> None:
    if source in MANUAL_SOURCES and actor in {ACTOR_PROVIDER, ACTOR_RECONCILIATION}:
        raise PolicyBlockError(f"actor {actor!r} may not change {source!r} entitlements")


async def write_transition(
    session: AsyncSession,
    *,
    user_id: UUID,
    entitlement: Entitlement | None,
    transition: Transition,
    actor: str,
    idempotency_key: str,
    now_utc: datetime,
    event: NormalizedPaymentEvent | None = None,
    metadata: dict[str, object] | None = None,
) -> tuple[Entitlement, LedgerEntry]:
    """Persist one window change and its ledger entry in the caller's transaction."""
    ensure_actor_may_mutate(actor, transition.after.source)
    after = transition.after

    if entitlement is None:
        entitlement = await EntitlementsRepo.create(
            session,
            entitlement=Entitlement(
                id=uuid4(),
                user_id=user_id,
                plan_key=after.plan_key,
                source=after.source,
                status=after.status,
                starts_at=after.starts_at,
                ends_at=after.ends_at,
                subscription_id=after.subscription_id,
                reason=after.reason,
                metadata_=dict(metadata or {}),
                created_at=now_utc,
                updated_at=now_utc,
            ),
        )
    else:
        ensure_actor_may_mutate(actor, entitlement.source)
        entitlement.plan_key = after.plan_key
        entitlement.source = after.source
        entitlement.status = after.status
        entitlement.starts_at = after.starts_at
        entitlement.ends_at = after.ends_at
        entitlement.subscription_id = after.subscription_id
        entitlement.reason = after.reason
        if metadata:
            entitlement.metadata_ = {**(entitlement.metadata_ or {}), **metadata}
        entitlement.updated_at = now_utc

    entry = await LedgerRepo.create(
        session,
        entry=LedgerEntry(
            entitlement_id=entitlement.id,
            user_id=user_id,
            action=transition.action,
            actor=actor,
            before_state=transition.before.as_dict() if transition.before is not None else None,
            after_state=after.as_dict(),
            event_provider=event.provider if event is not None else None,
            event_id=event.provider_event_id if event is not None else None,
            journal_entry_id=event.raw_ref if event is not None else None,
            reason=after.reason,
            idempotency_key=idempotency_key,
            metadata_={"origin": event.origin} if event is not None else {},
            created_at=now_utc,
        ),
    )
    logger.info(
        "entitlement_transition_written",
        user_id=str(user_id),
        entitlement_id=str(entitlement.id),
        action=transition.action,
        actor=actor,
        status=after.status,
        plan_key=after.plan_key,
    )
    return entitlement, entry
