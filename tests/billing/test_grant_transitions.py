from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.billing.grants.transitions import (
    EntitlementState,
    activate_window,
    cap_window,
    expire_window,
    extend_window,
    grant_window,
    is_downgrade,
    revoke_window,
    set_window,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _active(**overrides: object) -> EntitlementState:
    state = EntitlementState(
        plan_key="pro",
        source="paypal",
        status="active",
        starts_at=NOW - timedelta(days=10),
        ends_at=NOW + timedelta(days=20),
    )
    return replace(state, **overrides)


def test_grant_window_starting_later_is_scheduled() -> None:
    transition = grant_window(
        plan_key="pro",
        source="paypal",
        starts_at=NOW + timedelta(days=1),
        ends_at=NOW + timedelta(days=31),
        now_utc=NOW,
    )

    assert transition.action == "grant"
    assert transition.before is None
    assert transition.after.status == "scheduled"


def test_grant_window_rejects_inverted_window() -> None:
    with pytest.raises(ValueError):
        grant_window(
            plan_key="pro",
            source="paypal",
            starts_at=NOW,
            ends_at=NOW,
            now_utc=NOW,
        )


def test_extend_window_never_shortens() -> None:
    state = _active()

    assert extend_window(state, ends_at=NOW + timedelta(days=5)) is None
    assert extend_window(state, ends_at=state.ends_at) is None

    transition = extend_window(state, ends_at=NOW + timedelta(days=50))
    assert transition is not None
    assert transition.action == "extend"
    assert transition.after.ends_at == NOW + timedelta(days=50)


def test_extend_window_ignores_terminal_and_open_ended_windows() -> None:
    assert extend_window(_active(status="revoked"), ends_at=NOW + timedelta(days=90)) is None
    assert extend_window(_active(ends_at=None), ends_at=NOW + timedelta(days=90)) is None


def test_cap_window_moves_end_forward_and_revokes_when_before_start() -> None:
    state = _active()

    capped = cap_window(state, ends_at=NOW + timedelta(days=3), reason="grace_cancel")
    assert capped is not None
    assert capped.action == "update"
    assert capped.after.ends_at == NOW + timedelta(days=3)

    revoked = cap_window(state, ends_at=state.starts_at, reason="grace_cancel")
    assert revoked is not None
    assert revoked.action == "revoke"
    assert revoked.after.status == "revoked"

    assert cap_window(state, ends_at=NOW + timedelta(days=40), reason="grace_cancel") is None


def test_revoke_window_is_idempotent_on_terminal_state() -> None:
    transition = revoke_window(_active(), reason="refund")

    assert transition is not None
    assert transition.after.status == "revoked"
    assert transition.reason == "refund"
    assert revoke_window(transition.after, reason="refund") is None


def test_expire_window_only_after_end() -> None:
    assert expire_window(_active(), now_utc=NOW) is None

    ended = _active(ends_at=NOW - timedelta(seconds=1))
    transition = expire_window(ended, now_utc=NOW)
    assert transition is not None
    assert transition.action == "expire"
    assert transition.after.status == "expired"


def test_activate_window_promotes_due_scheduled_window() -> None:
    scheduled = _active(status="scheduled", starts_at=NOW - timedelta(minutes=1))
    transition = activate_window(scheduled, now_utc=NOW)

    assert transition is not None
    assert transition.after.status == "active"
    not_due = _active(status="scheduled", starts_at=NOW + timedelta(days=1))
    assert activate_window(not_due, now_utc=NOW) is None


def test_set_window_classifies_ledger_action() -> None:
    state = _active()

    assert set_window(None, state).action == "grant"
    assert set_window(state, state) is None
    assert set_window(state, replace(state, ends_at=NOW + timedelta(days=60))).action == "extend"
    assert set_window(state, replace(state, status="revoked")).action == "revoke"
    assert set_window(state, replace(state, status="expired")).action == "expire"
    assert set_window(state, replace(state, plan_key="vip")).action == "update"


def test_is_downgrade_detects_lost_access() -> None:
    state = _active()

    assert is_downgrade(None, state) is False
    assert is_downgrade(state, replace(state, status="revoked")) is True
    assert is_downgrade(state, replace(state, ends_at=NOW)) is True
    assert is_downgrade(state, replace(state, ends_at=None)) is False
    assert is_downgrade(state, replace(state, ends_at=NOW + timedelta(days=90))) is False


def test_expire_window_closes_scheduled_window_that_already_ended() -> None:
    missed = _active(
        status="scheduled",
        starts_at=NOW - timedelta(days=3),
        ends_at=NOW - timedelta(days=1),
    )
    transition = expire_window(missed, now_utc=NOW)

    assert transition is not None
    assert transition.before.status == "scheduled"
    assert transition.after.status == "expired"
