from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import DEFAULT_PLAN_KEY, PLAN_FREE, PLAN_PRO, PLAN_VIP
from app.billing.errors import PolicyBlockError
from app.db.repo.user_limit_overrides_repo import UserLimitOverridesRepo

WINDOW_DAILY = "daily"
WINDOW_NONE = "none"

LimitValue = int | bool


@dataclass(frozen=True, slots=True)
class LimitSpec:
    key: str
    kind: str
    window: str
    description: str


LIMIT_SPECS: dict[str, LimitSpec] = {
    spec.key: spec
    for spec in (
        LimitSpec("realtime_minutes_daily", "number", WINDOW_DAILY, "Realtime practice minutes"),
        LimitSpec("active_coaches", "number", WINDOW_NONE, "Max active coaches"),
        LimitSpec("tools_unlocked", "number", WINDOW_NONE, "Max tools unlocked"),
        LimitSpec("cooldown_days", "number", WINDOW_NONE, "Coach switch cooldown in days"),
        LimitSpec("tts_chars_daily", "number", WINDOW_DAILY, "TTS characters"),
        LimitSpec("uploads_mb_daily", "number", WINDOW_DAILY, "Upload megabytes"),
        LimitSpec("vocab_full_access", "boolean", WINDOW_NONE, "Full vocabulary filters"),
        LimitSpec("share_tryouts_daily", "number", WINDOW_DAILY, "Shareable tryouts"),
    )
}

PLAN_LIMITS: dict[str, dict[str, LimitValue]] = {
    PLAN_FREE: {
        "realtime_minutes_daily": 10,
        "active_coaches": 1,
        "tools_unlocked": 1,
        "cooldown_days": 7,
        "tts_chars_daily": 2000,
        "uploads_mb_daily": 25,
        "vocab_full_access": False,
        "share_tryouts_daily": 1,
    },
    PLAN_PRO: {
        "realtime_minutes_daily": 30,
        "active_coaches": 1,
        "tools_unlocked": 3,
        "cooldown_days": 7,
        "tts_chars_daily": 20000,
        "uploads_mb_daily": 250,
        "vocab_full_access": True,
        "share_tryouts_daily": 3,
    },
    PLAN_VIP: {
        "realtime_minutes_daily": 1440,
        "active_coaches": 99,
        "tools_unlocked": 99,
        "cooldown_days": 0,
        "tts_chars_daily": 100000,
        "uploads_mb_daily": 1024,
        "vocab_full_access": True,
        "share_tryouts_daily": 10,
    },
}


def limits_for(plan_key: str) -> dict[str, LimitValue]:
    """Catalog limits for a plan; unknown plans get the default plan's limits."""
    return dict(PLAN_LIMITS.get(plan_key, PLAN_LIMITS[DEFAULT_PLAN_KEY]))


def apply_overrides(
    limits: Mapping[str, LimitValue],
    overrides: Mapping[str, LimitValue],
) -> dict[str, LimitValue]:
    merged = dict(limits)
    for key, value in overrides.items():
        if key in LIMIT_SPECS:
            merged[key] = value
    return merged


async def user_overrides(session: AsyncSession, user_id: UUID) -> dict[str, LimitValue]:
    overrides: dict[str, LimitValue] = {}
    for row in await UserLimitOverridesRepo.list_for_user(session, user_id):
        spec = LIMIT_SPECS.get(row.limit_key)
        if spec is None:
            continue
        if spec.kind == "boolean" and row.value_bool is not None:
            overrides[row.limit_key] = bool(row.value_bool)
        elif spec.kind == "number" and row.value_num is not None:
            overrides[row.limit_key] = int(row.value_num)
    return overrides


async def limits_for_user(
    session: AsyncSession,
    *,
    user_id: UUID,
    plan_key: str,
) -> dict[str, LimitValue]:
    return apply_overrides(limits_for(plan_key), await user_overrides(session, user_id))


async def set_user_override(
    session: AsyncSession,
    *,
    user_id: UUID,
    limit_key: str,
    value: LimitValue,
    reason: str | None,
    now_utc: datetime,
) -> None:
    spec = LIMIT_SPECS.get(limit_key)
    if spec is None:
        raise PolicyBlockError(f"unknown limit {limit_key!r}")
    if spec.kind == "boolean":
        if not isinstance(value, bool):
            raise PolicyBlockError(f"limit {limit_key!r} takes a boolean")
        value_num, value_bool = None, value
    else:
        if isinstance(value, bool) or value < 0:
            raise PolicyBlockError(f"limit {limit_key!r} takes a non-negative number")
        value_num, value_bool = int(value), None
    await UserLimitOverridesRepo.upsert(
        session,
        user_id=user_id,
        limit_key=limit_key,
        value_num=value_num,
        value_bool=value_bool,
        reason=reason,
        now_utc=now_utc,
    )
