from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

import structlog

from app.billing.constants import (
    ENTITLEMENT_ACTIVE,
    ENTITLEMENT_CANCELED,
    EVENT_DISPUTE_OPENED,
    REASON_DISPUTE,
    REASON_MERGED,
    REASON_PAYMENT,
    REASON_REFUND,
    SUBSCRIPTION_CANCELED,
)
from app.billing.errors import (
    InvariantViolationError,
    NormalizationError,
    NormalizationErrorKind,
)
from app.billing.identities import resolve_event_user
from app.billing.plans import PlanPrice, advance_by_interval
from app.billing.types import GrantOutcome
from app.db.models.entitlements import Entitlement
from app.db.models.subscriptions import Subscription
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.subscriptions_repo import SubscriptionsRepo

from .common import EventContext, record
from .transitions import (
    extend_window,
    grant_window,
    initial_status,
    revoke_window,
    set_window,
    snapshot,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PaidPeriod:
    payment_ref: str
    occurred_at: datetime
    interval: str

    def as_dict(self) -> dict[str, str]:
        return {
            "ref": self.payment_ref,
            "occurred_at": self.occurred_at.isoformat(),
            "interval": self.interval,
        }


@dataclass(frozen=True, slots=True)
class StackedWindow:
    starts_at: datetime
    ends_at: datetime
    payment_refs: tuple[str, ...]


def stack_paid_periods(periods: Iterable[PaidPeriod]) -> list[StackedWindow]:
    """Fold one-off payments into access windows.

    Each payment adds one interval, starting at the end of the window it falls in
    or at its own time when it falls after every window. Payments are folded in
    ``occurred_at`` order, so the windows do not depend on delivery order.
    """
    windows: list[StackedWindow] = []
    for period in sorted(periods, key=lambda item: (item.occurred_at, item.payment_ref)):
        if windows and period.occurred_at <= windows[-1].ends_at:
            last = windows[-1]
            windows[-1] = StackedWindow(
                starts_at=last.starts_at,
                ends_at=advance_by_interval(last.ends_at, period.interval),
                payment_refs=last.payment_refs + (period.payment_ref,),
            )
            continue
        windows.append(
            StackedWindow(
                starts_at=period.occurred_at,
                ends_at=advance_by_interval(period.occurred_at, period.interval),
                payment_refs=(period.payment_ref,),
            )
        )
    return windows


def paid_periods(entitlement: Entitlement) -> list[PaidPeriod]:
    raw = (entitlement.metadata_ or {}).get("payments")
    if not isinstance(raw, list):
        return []
    return [
        PaidPeriod(
            payment_ref=str(item["ref"]),
            occurred_at=datetime.fromisoformat(str(item["occurred_at"])),
            interval=str(item["interval"]),
        )
        for item in raw
    ]


def _funding_metadata(entitlement: Entitlement | None, ctx: EventContext) -> dict[str, object]:
    event = ctx.event
    refs: list[object] = []
    if entitlement is not None:
        existing = (entitlement.metadata_ or {}).get("payment_refs")
        if isinstance(existing, list):
            refs = list(existing)
    if event.payment_ref is not None and event.payment_ref not in refs:
        refs.append(event.payment_ref)
    metadata: dict[str, object] = {"payment_refs": refs}
    if event.price_key is not None:
        metadata["price_key"] = event.price_key
    return metadata


async def _apply_renewal(
    ctx: EventContext,
    outcome: GrantOutcome,
    *,
    subscription: Subscription,
    price: PlanPrice,
) -> GrantOutcome:
    """Subscription payments cover the paid period; the subscription window tracks it."""
    event = ctx.event
    paid_until = advance_by_interval(event.occurred_at, price.interval)

    window = await EntitlementsRepo.get_extendable_window_for_update(
        ctx.session,
        user_id=outcome.user_id,
        plan_key=price.plan_key,
        source=event.provider,
        at_utc=event.occurred_at,
    )
    if window is not None:
        state = snapshot(window)
        if state.ends_at is None:
            outcome.detail = "open_ended_window"
            return outcome
        transition = extend_window(
            state,
            ends_at=max(state.ends_at, paid_until),
            reason=REASON_PAYMENT,
        )
        if transition is None:
            outcome.detail = "already_covered"
            return outcome
        await record(
            ctx,
            outcome,
            entitlement=window,
            transition=transition,
            metadata=_funding_metadata(window, ctx),
        )
        outcome.action = "extended"
        return outcome

    existing = await EntitlementsRepo.get_by_window_key_for_update(
        ctx.session,
        user_id=outcome.user_id,
        plan_key=price.plan_key,
        starts_at=event.occurred_at,
    )
    if existing is not None:
        # A terminal window already holds this key; provider events never resurrect it.
        outcome.detail = f"window_key_taken:{existing.status}"
        return outcome

    transition = grant_window(
        plan_key=price.plan_key,
        source=event.provider,
        starts_at=event.occurred_at,
        ends_at=paid_until,
        now_utc=ctx.now_utc,
        subscription_id=subscription.id,
        reason=REASON_PAYMENT,
    )
    await record(
        ctx,
        outcome,
        entitlement=None,
        transition=transition,
        metadata=_funding_metadata(None, ctx),
    )
    outcome.action = "granted"
    return outcome


async def _apply_one_off(
    ctx: EventContext,
    outcome: GrantOutcome,
    *,
    price: PlanPrice,
) -> GrantOutcome:
    """Restack the user's one-off windows of this plan with the new payment folded in."""
    event = ctx.event
    payment = PaidPeriod(
        payment_ref=event.payment_ref or event.provider_event_id,
        occurred_at=event.occurred_at,
        interval=price.interval,
    )

    windows = await EntitlementsRepo.list_live_one_off_for_update(
        ctx.session,
        user_id=outcome.user_id,
        plan_key=price.plan_key,
        source=event.provider,
    )
    logged = {window.id: paid_periods(window) for window in windows}
    windows = [window for window in windows if logged[window.id]]
    if any(
        period.payment_ref == payment.payment_ref
        for periods in logged.values()
        for period in periods
    ):
        outcome.detail = "already_covered"
        return outcome

    periods = [period for window in windows for period in logged[window.id]]
    stacked = next(
        item
        for item in stack_paid_periods([*periods, payment])
        if payment.payment_ref in item.payment_refs
    )
    members = [
        window
        for window in windows
        if any(period.payment_ref in stacked.payment_refs for period in logged[window.id])
    ]
    member_periods = sorted(
        [*(period for window in members for period in logged[window.id]), payment],
        key=lambda item: (item.occurred_at, item.payment_ref),
    )
    metadata: dict[str, object] = {
        "payment_refs": [period.payment_ref for period in member_periods],
        "payments": [period.as_dict() for period in member_periods],
    }
    if event.price_key is not None:
        metadata["price_key"] = event.price_key

    if not members:
        existing = await EntitlementsRepo.get_by_window_key_for_update(
            ctx.session,
            user_id=outcome.user_id,
            plan_key=price.plan_key,
            starts_at=stacked.starts_at,
        )
        if existing is not None:
            # A terminal window already holds this key; provider events never resurrect it.
            outcome.detail = f"window_key_taken:{existing.status}"
            return outcome
        transition = grant_window(
            plan_key=price.plan_key,
            source=event.provider,
            starts_at=stacked.starts_at,
            ends_at=stacked.ends_at,
            now_utc=ctx.now_utc,
            reason=REASON_PAYMENT,
        )
        await record(ctx, outcome, entitlement=None, transition=transition, metadata=metadata)
        outcome.action = "granted"
        return outcome

    survivor = min(members, key=lambda item: (item.starts_at, str(item.id)))
    state = snapshot(survivor)
    if stacked.starts_at != state.starts_at:
        taken = await EntitlementsRepo.get_by_window_key_for_update(
            ctx.session,
            user_id=outcome.user_id,
            plan_key=price.plan_key,
            starts_at=stacked.starts_at,
        )
        if taken is not None:
            raise InvariantViolationError(
                "restacked payment window collides with an existing window",
                context={
                    "provider": event.provider,
                    "payment_ref": payment.payment_ref,
                    "entitlement_id": str(taken.id),
                    "status": taken.status,
                },
            )

    for window in members:
        if window.id == survivor.id:
            continue
        absorbed = snapshot(window)
        transition = set_window(
            absorbed,
            replace(absorbed, status=ENTITLEMENT_CANCELED, reason=REASON_MERGED),
        )
        if transition is not None:
            await record(ctx, outcome, entitlement=window, transition=transition)

    status = state.status
    if status != ENTITLEMENT_ACTIVE:
        status = initial_status(stacked.starts_at, ctx.now_utc)
    transition = set_window(
        state,
        replace(
            state,
            status=status,
            starts_at=stacked.starts_at,
            ends_at=stacked.ends_at,
            reason=REASON_PAYMENT,
        ),
    )
    if transition is None:
        outcome.detail = "already_covered"
        return outcome
    await record(ctx, outcome, entitlement=survivor, transition=transition, metadata=metadata)
    if len(members) == 1 and state.starts_at == stacked.starts_at:
        outcome.action = "extended"
    else:
        outcome.action = "restacked"
    return outcome


async def apply_payment_succeeded(ctx: EventContext) -> GrantOutcome:
    event = ctx.event
    subscription: Subscription | None = None
    if event.subscription_ref is not None:
        subscription = await SubscriptionsRepo.get_by_external_ref_for_update(
            ctx.session,
            provider=event.provider,
            external_ref=event.subscription_ref,
        )

    if subscription is not None:
        user_id = subscription.user_id
        if (
            subscription.status == SUBSCRIPTION_CANCELED
            and event.occurred_at < subscription.last_event_at
        ):
            return GrantOutcome(
                action="stale",
                user_id=user_id,
                detail="subscription_canceled_later",
            )
    else:
        user_id = await resolve_event_user(
            ctx.session,
            provider=event.provider,
            customer_ref=event.customer_ref,
            user_hint=event.user_hint,
            now_utc=ctx.now_utc,
        )

    price = ctx.catalog.plan_for_price_key(event.price_key)
    if price is None and subscription is not None:
        price = ctx.catalog.plan_for_price_key(subscription.price_key)
    if price is None:
        raise NormalizationError(
            NormalizationErrorKind.UNMAPPED_PLAN,
            f"{event.provider} payment {event.payment_ref!r} names no known plan",
        )

    outcome = GrantOutcome(action="noop", user_id=user_id)
    if subscription is not None:
        return await _apply_renewal(ctx, outcome, subscription=subscription, price=price)
    return await _apply_one_off(ctx, outcome, price=price)


async def apply_payment_reversal(ctx: EventContext) -> GrantOutcome:
    """Refunds and disputes revoke every window the payment funded, immediately."""
    event = ctx.event
    if event.payment_ref is None:
        raise NormalizationError(
            NormalizationErrorKind.MALFORMED_PAYLOAD,
            f"{event.type} names no payment",
        )
    reason = REASON_DISPUTE if event.type == EVENT_DISPUTE_OPENED else REASON_REFUND

    windows = await EntitlementsRepo.list_funded_by_payment_for_update(
        ctx.session,
        source=event.provider,
        payment_ref=event.payment_ref,
    )
    if not windows:
        logger.warning(
            "payment_reversal_without_entitlement",
            provider=event.provider,
            provider_event_id=event.provider_event_id,
            payment_ref=event.payment_ref,
            event_type=event.type,
        )
        return GrantOutcome(action="noop", detail="nothing_to_revoke")

    outcome = GrantOutcome(action="noop", user_id=windows[0].user_id)
    for window in windows:
        if window.user_id != outcome.user_id:
            continue
        transition = revoke_window(snapshot(window), reason=reason)
        if transition is None:
            continue
        await record(ctx, outcome, entitlement=window, transition=transition)
    if outcome.mutated:
        outcome.action = "revoked"
    return outcome
