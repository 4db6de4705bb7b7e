from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import UUID

from app.billing.grants.transitions import grant_window
from app.billing.resolver import is_effective, next_boundary, resolve_effective_plan

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _window(
    plan_key: str,
    *,
    entitlement_id: str,
    status: str = "active",
    starts_in_days: float = -1,
    ends_in_days: float | None = 30,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=UUID(entitlement_id),
        plan_key=plan_key,
        status=status,
        starts_at=NOW + timedelta(days=starts_in_days),
        ends_at=NOW + timedelta(days=ends_in_days) if ends_in_days is not None else None,
    )


def test_no_windows_resolves_to_free() -> None:
    plan = resolve_effective_plan([], NOW)

    assert plan.plan_key == "free"
    assert plan.entitlement_id is None
    assert plan.valid_until is None


def test_highest_rank_wins_over_more_recent_lower_plan() -> None:
    vip = _window("vip", entitlement_id="00000000-0000-0000-0000-000000000001", starts_in_days=-20)
    pro = _window("pro", entitlement_id="00000000-0000-0000-0000-000000000002", starts_in_days=-1)

    plan = resolve_effective_plan([pro, vip], NOW)

    assert plan.plan_key == "vip"
    assert plan.entitlement_id == vip.id


def test_same_rank_ties_break_on_latest_start_then_id() -> None:
    older = _window("pro", entitlement_id="00000000-0000-0000-0000-00000000000a", starts_in_days=-5)
    newer = _window("pro", entitlement_id="00000000-0000-0000-0000-000000000001", starts_in_days=-2)
    assert resolve_effective_plan([older, newer], NOW).entitlement_id == newer.id

    first = _window("pro", entitlement_id="00000000-0000-0000-0000-000000000001")
    second = _window("pro", entitlement_id="00000000-0000-0000-0000-000000000002")
    assert resolve_effective_plan([second, first], NOW).entitlement_id == second.id
    assert resolve_effective_plan([first, second], NOW).entitlement_id == second.id


def test_only_active_windows_covering_now_are_effective() -> None:
    revoked = _window(
        "vip",
        entitlement_id="00000000-0000-0000-0000-000000000001",
        status="revoked",
    )
    ended = _window(
        "vip",
        entitlement_id="00000000-0000-0000-0000-000000000002",
        starts_in_days=-30,
        ends_in_days=0,
    )
    future = _window(
        "vip",
        entitlement_id="00000000-0000-0000-0000-000000000003",
        status="scheduled",
        starts_in_days=2,
    )

    assert not is_effective(revoked, NOW)
    assert not is_effective(ended, NOW)
    assert not is_effective(future, NOW)
    assert resolve_effective_plan([revoked, ended, future], NOW).plan_key == "free"


def test_valid_until_is_next_start_or_end_boundary() -> None:
    current = _window("pro", entitlement_id="00000000-0000-0000-0000-000000000001", ends_in_days=10)
    upcoming = _window(
        "vip",
        entitlement_id="00000000-0000-0000-0000-000000000002",
        status="scheduled",
        starts_in_days=4,
        ends_in_days=40,
    )

    plan = resolve_effective_plan([current, upcoming], NOW)

    assert plan.plan_key == "pro"
    assert plan.valid_until == NOW + timedelta(days=4)
    assert next_boundary([current], NOW) == NOW + timedelta(days=10)


def test_scheduled_window_binds_once_started_without_activation_sweep() -> None:
    due = _window(
        "vip",
        entitlement_id="00000000-0000-0000-0000-000000000001",
        status="scheduled",
        starts_in_days=-1,
    )

    assert is_effective(due, NOW)
    assert resolve_effective_plan([due], NOW).plan_key == "vip"


def test_overlapping_windows_resolve_to_highest_live_tier() -> None:
    t0 = NOW - timedelta(days=60)
    t1 = NOW - timedelta(days=10)
    t2 = NOW + timedelta(days=20)
    t3 = NOW + timedelta(days=5)
    t4 = NOW + timedelta(days=15)
    granted_at = NOW

    rows = []
    for entitlement_id, plan_key, starts_at, ends_at in (
        ("00000000-0000-0000-0000-000000000001", "free", t0, None),
        ("00000000-0000-0000-0000-000000000002", "pro", t1, t2),
        ("00000000-0000-0000-0000-000000000003", "vip", t3, t4),
    ):
        transition = grant_window(
            plan_key=plan_key,
            source="promo",
            starts_at=starts_at,
            ends_at=ends_at,
            now_utc=granted_at,
        )
        rows.append(
            SimpleNamespace(
                id=UUID(entitlement_id),
                plan_key=plan_key,
                status=transition.after.status,
                starts_at=starts_at,
                ends_at=ends_at,
            )
        )
    assert rows[2].status == "scheduled"

    assert resolve_effective_plan(rows, t1 - timedelta(hours=1)).plan_key == "free"
    assert resolve_effective_plan(rows, t1 + timedelta(hours=1)).plan_key == "pro"
    assert resolve_effective_plan(rows, t3).plan_key == "vip"
    assert resolve_effective_plan(rows, t3 + timedelta(hours=1)).plan_key == "vip"
    assert resolve_effective_plan(rows, t4 - timedelta(seconds=1)).plan_key == "vip"
    assert resolve_effective_plan(rows, t4).plan_key == "pro"
    assert resolve_effective_plan(rows, t2).plan_key == "free"
