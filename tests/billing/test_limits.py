from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from app.billing import limits
from app.billing.errors import PolicyBlockError
from app.billing.limits import LIMIT_SPECS, PLAN_LIMITS, apply_overrides, limits_for

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_every_plan_defines_every_limit_key() -> None:
    for plan_key, plan_limits in PLAN_LIMITS.items():
        assert set(plan_limits) == set(LIMIT_SPECS), plan_key


def test_limits_for_unknown_plan_falls_back_to_free() -> None:
    assert limits_for("platinum") == PLAN_LIMITS["free"]
    assert limits_for("vip")["realtime_minutes_daily"] == 1440


def test_apply_overrides_ignores_unknown_keys() -> None:
    merged = apply_overrides(limits_for("free"), {"tts_chars_daily": 9000, "bogus": 1})

    assert merged["tts_chars_daily"] == 9000
    assert "bogus" not in merged


@pytest.mark.asyncio
async def test_limits_for_user_applies_typed_override_rows(monkeypatch) -> None:
    rows = [
        SimpleNamespace(limit_key="uploads_mb_daily", value_num=500, value_bool=None),
        SimpleNamespace(limit_key="vocab_full_access", value_num=None, value_bool=True),
        SimpleNamespace(limit_key="retired_limit", value_num=3, value_bool=None),
    ]

    async def fake_list_for_user(session, user_id):  # noqa: ARG001
        return rows

    monkeypatch.setattr(limits.UserLimitOverridesRepo, "list_for_user", fake_list_for_user)

    resolved = await limits.limits_for_user(object(), user_id=uuid4(), plan_key="free")

    assert resolved["uploads_mb_daily"] == 500
    assert resolved["vocab_full_access"] is True
    assert resolved["realtime_minutes_daily"] == 10


@pytest.mark.asyncio
async def test_set_user_override_validates_key_and_type(monkeypatch) -> None:
    calls: list[dict[str, object]] = []

    async def fake_upsert(session, **kwargs):  # noqa: ARG001
        calls.append(kwargs)

    monkeypatch.setattr(limits.UserLimitOverridesRepo, "upsert", fake_upsert)
    user_id = uuid4()

    async def set_override(limit_key: str, value: int | bool) -> None:
        await limits.set_user_override(
            object(),
            user_id=user_id,
            limit_key=limit_key,
            value=value,
            reason="support",
            now_utc=NOW,
        )

    with pytest.raises(PolicyBlockError):
        await set_override("nope", 1)
    with pytest.raises(PolicyBlockError):
        await set_override("vocab_full_access", 1)
    with pytest.raises(PolicyBlockError):
        await set_override("active_coaches", True)
    with pytest.raises(PolicyBlockError):
        await set_override("active_coaches", -1)

    await set_override("active_coaches", 4)

    assert len(calls) == 1
    assert calls[0]["limit_key"] == "active_coaches"
    assert calls[0]["value_num"] == 4
    assert calls[0]["value_bool"] is None
