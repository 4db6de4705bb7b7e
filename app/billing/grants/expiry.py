from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import ACTOR_SYSTEM
from app.billing.resolver import refresh_current_plan
from app.billing.types import GrantOutcome
from app.db.repo.entitlements_repo import EntitlementsRepo

from .transitions import activate_window, expire_window, snapshot
from .writer import write_transition


async def expire_entitlement(
    session: AsyncSession,
    *,
    entitlement_id: UUID,
    now_utc: datetime,
) -> GrantOutcome:
    entitlement = await EntitlementsRepo.get_by_id_for_update(session, entitlement_id)
    if entitlement is None:
        return GrantOutcome(action="noop", detail="not_found")
    transition = expire_window(snapshot(entitlement), now_utc=now_utc)
    if transition is None:
        return GrantOutcome(action="noop", user_id=entitlement.user_id)

    _, entry = await write_transition(
        session,
        user_id=entitlement.user_id,
        entitlement=entitlement,
        transition=transition,
        actor=ACTOR_SYSTEM,
        idempotency_key=f"system:expire:{entitlement.id}:{now_utc.isoformat()}",
        now_utc=now_utc,
    )
    await refresh_current_plan(session, user_id=entitlement.user_id, now_utc=now_utc)
    return GrantOutcome(
        action="expired",
        user_id=entitlement.user_id,
        entitlement_ids=[entitlement.id],
        ledger_entry_ids=[entry.id],
    )


async def activate_scheduled_entitlement(
    session: AsyncSession,
    *,
    entitlement_id: UUID,
    now_utc: datetime,
) -> GrantOutcome:
    entitlement = await EntitlementsRepo.get_by_id_for_update(session, entitlement_id)
    if entitlement is None:
        return GrantOutcome(action="noop", detail="not_found")
    transition = activate_window(snapshot(entitlement), now_utc=now_utc)
    if transition is None:
        return GrantOutcome(action="noop", user_id=entitlement.user_id)

    _, entry = await write_transition(
        session,
        user_id=entitlement.user_id,
        entitlement=entitlement,
        transition=transition,
        actor=ACTOR_SYSTEM,
        idempotency_key=f"system:activate:{entitlement.id}:{now_utc.isoformat()}",
        now_utc=now_utc,
    )
    await refresh_current_plan(session, user_id=entitlement.user_id, now_utc=now_utc)
    return GrantOutcome(
        action="activated",
        user_id=entitlement.user_id,
        entitlement_ids=[entitlement.id],
        ledger_entry_ids=[entry.id],
    )
