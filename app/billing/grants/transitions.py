"""Pure entitlement state transitions.

Every function takes the current window state and returns either ``None`` (nothing
to change) or a ``Transition`` carrying the new state and the ledger action that
records it. Callers persist the window and its ledger entry together.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from app.billing.constants import (
    ENTITLEMENT_ACTIVE,
    ENTITLEMENT_CANCELED,
    ENTITLEMENT_EXPIRED,
    ENTITLEMENT_REVOKED,
    ENTITLEMENT_SCHEDULED,
    ENTITLEMENT_STATUS_RANKS,
    LEDGER_EXPIRE,
    LEDGER_EXTEND,
    LEDGER_GRANT,
    LEDGER_REVOKE,
    LEDGER_UPDATE,
    REASON_EXPIRED,
)
from app.db.models.entitlements import Entitlement

TERMINAL_STATUSES = frozenset({ENTITLEMENT_EXPIRED, ENTITLEMENT_CANCELED, ENTITLEMENT_REVOKED})
LIVE_STATUSES = frozenset({ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED})


@dataclass(frozen=True, slots=True)
class EntitlementState:
    plan_key: str
    source: str
    status: str
    starts_at: datetime
    ends_at: datetime | None
    subscription_id: UUID | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "plan_key": self.plan_key,
            "source": self.source,
            "status": self.status,
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat() if self.ends_at is not None else None,
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class Transition:
    action: str
    before: EntitlementState | None
    after: EntitlementState

    @property
    def reason(self) -> str | None:
        return self.after.reason


def snapshot(entitlement: Entitlement) -> EntitlementState:
    return EntitlementState(
        plan_key=entitlement.plan_key,
        source=entitlement.source,
        status=entitlement.status,
        starts_at=entitlement.starts_at,
        ends_at=entitlement.ends_at,
        subscription_id=entitlement.subscription_id,
        reason=entitlement.reason,
    )


def initial_status(starts_at: datetime, now_utc: datetime) -> str:
    return ENTITLEMENT_SCHEDULED if starts_at > now_utc else ENTITLEMENT_ACTIVE


def grant_window(
    *,
    plan_key: str,
    source: str,
    starts_at: datetime,
    ends_at: datetime | None,
    now_utc: datetime,
    subscription_id: UUID | None = None,
    reason: str | None = None,
) -> Transition:
    if ends_at is not None and ends_at <= starts_at:
        raise ValueError("entitlement window must end after it starts")
    return Transition(
        action=LEDGER_GRANT,
        before=None,
        after=EntitlementState(
            plan_key=plan_key,
            source=source,
            status=initial_status(starts_at, now_utc),
            starts_at=starts_at,
            ends_at=ends_at,
            subscription_id=subscription_id,
            reason=reason,
        ),
    )


def extend_window(
    state: EntitlementState,
    *,
    ends_at: datetime,
    reason: str | None = None,
) -> Transition | None:
    """Move ``ends_at`` later. Open-ended and terminal windows are left alone."""
    if state.status not in LIVE_STATUSES or state.ends_at is None:
        return None
    if ends_at <= state.ends_at:
        return None
    return Transition(
        action=LEDGER_EXTEND,
        before=state,
        after=replace(state, ends_at=ends_at, reason=reason or state.reason),
    )


def cap_window(
    state: EntitlementState,
    *,
    ends_at: datetime,
    reason: str,
) -> Transition | None:
    """Bring ``ends_at`` forward to ``ends_at``; a cap at or before the start revokes."""
    if state.status not in LIVE_STATUSES:
        return None
    if state.ends_at is not None and state.ends_at <= ends_at:
        return None
    if ends_at <= state.starts_at:
        return revoke_window(state, reason=reason)
    return Transition(
        action=LEDGER_UPDATE,
        before=state,
        after=replace(state, ends_at=ends_at, reason=reason),
    )


def revoke_window(state: EntitlementState, *, reason: str) -> Transition | None:
    if state.status not in LIVE_STATUSES:
        return None
    return Transition(
        action=LEDGER_REVOKE,
        before=state,
        after=replace(state, status=ENTITLEMENT_REVOKED, reason=reason),
    )


def expire_window(state: EntitlementState, *, now_utc: datetime) -> Transition | None:
    if state.status not in LIVE_STATUSES or state.ends_at is None or state.ends_at > now_utc:
        return None
    return Transition(
        action=LEDGER_EXPIRE,
        before=state,
        after=replace(state, status=ENTITLEMENT_EXPIRED, reason=REASON_EXPIRED),
    )


def activate_window(state: EntitlementState, *, now_utc: datetime) -> Transition | None:
    if state.status != ENTITLEMENT_SCHEDULED or state.starts_at > now_utc:
        return None
    return Transition(
        action=LEDGER_UPDATE,
        before=state,
        after=replace(state, status=ENTITLEMENT_ACTIVE),
    )


def set_window(
    state: EntitlementState | None,
    desired: EntitlementState,
) -> Transition | None:
    """Move a window to an explicit target state, as the manual upsert does."""
    if state is None:
        return Transition(action=LEDGER_GRANT, before=None, after=desired)
    if state == desired:
        return None
    if desired.status in TERMINAL_STATUSES and state.status not in TERMINAL_STATUSES:
        action = LEDGER_EXPIRE if desired.status == ENTITLEMENT_EXPIRED else LEDGER_REVOKE
    elif (
        desired.status == state.status
        and desired.plan_key == state.plan_key
        and state.ends_at is not None
        and (desired.ends_at is None or desired.ends_at > state.ends_at)
        and replace(desired, ends_at=state.ends_at, reason=state.reason) == state
    ):
        action = LEDGER_EXTEND
    else:
        action = LEDGER_UPDATE
    return Transition(action=action, before=state, after=desired)


def is_downgrade(before: EntitlementState | None, after: EntitlementState) -> bool:
    """True when the change takes access away from the window."""
    if before is None:
        return False
    if ENTITLEMENT_STATUS_RANKS[after.status] < ENTITLEMENT_STATUS_RANKS[before.status]:
        return True
    if after.ends_at is None:
        return False
    return before.ends_at is None or after.ends_at < before.ends_at
