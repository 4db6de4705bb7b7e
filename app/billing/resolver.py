from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import (
    DEFAULT_PLAN_KEY,
    ENTITLEMENT_ACTIVE,
    ENTITLEMENT_SCHEDULED,
    PLAN_RANKS,
)
from app.billing.types import EffectivePlan
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.user_current_plans_repo import UserCurrentPlansRepo

_LIVE_STATUSES = frozenset({ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED})


class EntitlementWindow(Protocol):
    id: UUID
    plan_key: str
    status: str
    starts_at: datetime
    ends_at: datetime | None


def is_effective(entitlement: EntitlementWindow, at: datetime) -> bool:
    # A scheduled window binds from its start whether or not the activation sweep ran.
    return (
        entitlement.status in _LIVE_STATUSES
        and entitlement.starts_at <= at
        and (entitlement.ends_at is None or entitlement.ends_at > at)
    )


def _precedence(entitlement: EntitlementWindow) -> tuple[int, datetime, str]:
    # vip > pro > free, then the most recent start, then id for a total order.
    return (PLAN_RANKS.get(entitlement.plan_key, 0), entitlement.starts_at, str(entitlement.id))


def next_boundary(entitlements: Iterable[EntitlementWindow], at: datetime) -> datetime | None:
    """Earliest instant after ``at`` where some window starts or ends."""
    boundaries: list[datetime] = []
    for entitlement in entitlements:
        if entitlement.status not in _LIVE_STATUSES:
            continue
        if entitlement.starts_at > at:
            boundaries.append(entitlement.starts_at)
        if entitlement.ends_at is not None and entitlement.ends_at > at:
            boundaries.append(entitlement.ends_at)
    return min(boundaries) if boundaries else None


def resolve_effective_plan(
    entitlements: Iterable[EntitlementWindow],
    at: datetime,
) -> EffectivePlan:
    windows = list(entitlements)
    candidates = [entitlement for entitlement in windows if is_effective(entitlement, at)]
    valid_until = next_boundary(windows, at)
    if not candidates:
        return EffectivePlan(
            plan_key=DEFAULT_PLAN_KEY,
            entitlement_id=None,
            valid_until=valid_until,
        )
    winner = max(candidates, key=_precedence)
    return EffectivePlan(
        plan_key=winner.plan_key,
        entitlement_id=winner.id,
        valid_until=valid_until,
    )


async def _load_windows(session: AsyncSession, user_id: UUID) -> list[EntitlementWindow]:
    return list(
        await EntitlementsRepo.list_for_user(
            session,
            user_id=user_id,
            statuses=(ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED),
        )
    )


async def refresh_current_plan(
    session: AsyncSession,
    *,
    user_id: UUID,
    now_utc: datetime,
) -> EffectivePlan:
    """Recompute and persist the denormalized current-plan pointer for ``user_id``."""
    await UserCurrentPlansRepo.lock_for_refresh(session, user_id=user_id, now_utc=now_utc)
    plan = resolve_effective_plan(await _load_windows(session, user_id), now_utc)
    await UserCurrentPlansRepo.upsert(
        session,
        user_id=user_id,
        plan_key=plan.plan_key,
        entitlement_id=plan.entitlement_id,
        computed_at=now_utc,
        valid_until=plan.valid_until,
    )
    return plan


async def current_plan(
    session: AsyncSession,
    *,
    user_id: UUID,
    at: datetime | None = None,
) -> EffectivePlan:
    """Effective plan at ``at`` (default now), served from the pointer while it is fresh."""
    now_utc = datetime.now(timezone.utc)
    if at is not None and at != now_utc:
        return resolve_effective_plan(await _load_windows(session, user_id), at)

    pointer = await UserCurrentPlansRepo.get(session, user_id)
    if (
        pointer is not None
        and pointer.computed_at <= now_utc
        and (pointer.valid_until is None or now_utc < pointer.valid_until)
    ):
        return EffectivePlan(
            plan_key=pointer.plan_key,
            entitlement_id=pointer.entitlement_id,
            valid_until=pointer.valid_until,
        )
    return await refresh_current_plan(session, user_id=user_id, now_utc=now_utc)
