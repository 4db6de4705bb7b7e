from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import (
    ACTOR_ADMIN,
    ENTITLEMENT_STATUSES,
    MANUAL_SOURCES,
    PLAN_RANKS,
    PROVIDERS,
)
from app.billing.errors import PolicyBlockError
from app.billing.resolver import refresh_current_plan
from app.billing.types import GrantOutcome
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.ledger_repo import LedgerRepo

from .transitions import EntitlementState, is_downgrade, set_window, snapshot
from .writer import ensure_actor_may_mutate, write_transition


async def upsert_entitlement_period(
    session: AsyncSession,
    *,
    user_id: UUID,
    plan_key: str,
    source: str,
    status: str,
    starts_at: datetime,
    ends_at: datetime | None,
    reason: str | None,
    actor: str,
    now_utc: datetime,
    idempotency_key: str | None = None,
    subscription_id: UUID | None = None,
) -> GrantOutcome:
    """Create or move the window keyed by ``(user_id, plan_key, starts_at)``.

    Shares the ledger writer with the event path, so manual grants are audited the
    same way. Raises ``PolicyBlockError`` for changes the actor may not make.
    """
    if plan_key not in PLAN_RANKS:
        raise PolicyBlockError(f"unknown plan {plan_key!r}")
    if status not in ENTITLEMENT_STATUSES:
        raise PolicyBlockError(f"unknown entitlement status {status!r}")
    if source not in MANUAL_SOURCES and source not in PROVIDERS:
        raise PolicyBlockError(f"unknown entitlement source {source!r}")
    if ends_at is not None and ends_at <= starts_at:
        raise PolicyBlockError("entitlement window must end after it starts")
    if source in MANUAL_SOURCES and actor != ACTOR_ADMIN:
        raise PolicyBlockError(f"only an admin may grant {source!r} entitlements")
    ensure_actor_may_mutate(actor, source)

    if idempotency_key is not None:
        replayed = await LedgerRepo.get_by_idempotency_key(session, idempotency_key)
        if replayed is not None:
            return GrantOutcome(
                action="noop",
                user_id=user_id,
                entitlement_ids=[replayed.entitlement_id],
                idempotent_replay=True,
            )

    existing = await EntitlementsRepo.get_by_window_key_for_update(
        session,
        user_id=user_id,
        plan_key=plan_key,
        starts_at=starts_at,
    )
    before = snapshot(existing) if existing is not None else None
    desired = EntitlementState(
        plan_key=plan_key,
        source=source,
        status=status,
        starts_at=starts_at,
        ends_at=ends_at,
        subscription_id=subscription_id if existing is None else existing.subscription_id,
        reason=reason,
    )
    if existing is not None:
        ensure_actor_may_mutate(actor, existing.source)
    if actor != ACTOR_ADMIN and is_downgrade(before, desired):
        raise PolicyBlockError("only an admin may shorten or downgrade an entitlement")

    transition = set_window(before, desired)
    if transition is None:
        return GrantOutcome(
            action="noop",
            user_id=user_id,
            entitlement_ids=[existing.id] if existing is not None else [],
            idempotent_replay=True,
        )

    entitlement, entry = await write_transition(
        session,
        user_id=user_id,
        entitlement=existing,
        transition=transition,
        actor=actor,
        idempotency_key=idempotency_key or f"manual:{user_id}:{uuid4().hex}",
        now_utc=now_utc,
    )
    await refresh_current_plan(session, user_id=user_id, now_utc=now_utc)
    return GrantOutcome(
        action=transition.action,
        user_id=user_id,
        entitlement_ids=[entitlement.id],
        ledger_entry_ids=[entry.id],
    )
