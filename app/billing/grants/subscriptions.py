from __future__ import annotations

from uuid import UUID, uuid4

import structlog

from app.billing.constants import (
    ENTITLEMENT_ACTIVE,
    ENTITLEMENT_SCHEDULED,
    REASON_CANCEL_AT_PERIOD_END,
    REASON_CANCELED,
    REASON_PLAN_CHANGE,
    REASON_SUBSCRIPTION,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_GRANTING_STATUSES,
)
from app.billing.errors import InvariantViolationError, NormalizationError, NormalizationErrorKind
from app.billing.identities import resolve_event_user
from app.billing.plans import PlanPrice, advance_by_interval
from app.billing.types import GrantOutcome
from app.db.models.entitlements import Entitlement
from app.db.models.subscriptions import Subscription
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.subscriptions_repo import SubscriptionsRepo

from .common import EventContext, record
from .transitions import cap_window, extend_window, grant_window, revoke_window, snapshot

logger = structlog.get_logger(__name__)


async def _load_subscription(ctx: EventContext) -> Subscription | None:
    if ctx.event.subscription_ref is None:
        raise NormalizationError(
            NormalizationErrorKind.MALFORMED_PAYLOAD,
            f"{ctx.event.type} names no subscription",
        )
    return await SubscriptionsRepo.get_by_external_ref_for_update(
        ctx.session,
        provider=ctx.event.provider,
        external_ref=ctx.event.subscription_ref,
    )


async def _subscription_user(ctx: EventContext, subscription: Subscription | None) -> UUID:
    event = ctx.event
    if subscription is None:
        return await resolve_event_user(
            ctx.session,
            provider=event.provider,
            customer_ref=event.customer_ref,
            user_hint=event.user_hint,
            now_utc=ctx.now_utc,
        )
    if event.user_hint is not None and event.user_hint != str(subscription.user_id):
        raise InvariantViolationError(
            "event names a different user than the recorded subscription",
            context={
                "provider": event.provider,
                "subscription_ref": event.subscription_ref,
                "subscription_user_id": str(subscription.user_id),
                "event_user_hint": event.user_hint,
            },
        )
    return subscription.user_id


def _check_ordering(ctx: EventContext, subscription: Subscription) -> bool:
    """False for events older than what the subscription already reflects."""
    event = ctx.event
    if event.occurred_at < subscription.last_event_at:
        return False
    if event.occurred_at == subscription.last_event_at:
        conflicting = (
            (event.period_end is not None and event.period_end != subscription.current_period_end)
            or (
                event.subscription_status is not None
                and event.subscription_status != subscription.status
            )
        )
        if conflicting:
            raise InvariantViolationError(
                "two events for one subscription at the same instant disagree",
                context={
                    "provider": event.provider,
                    "subscription_ref": event.subscription_ref,
                    "occurred_at": event.occurred_at.isoformat(),
                    "recorded_status": subscription.status,
                    "event_status": event.subscription_status,
                    "recorded_period_end": (
                        subscription.current_period_end.isoformat()
                        if subscription.current_period_end is not None
                        else None
                    ),
                    "event_period_end": (
                        event.period_end.isoformat() if event.period_end is not None else None
                    ),
                },
            )
    return True


def _resolve_price(ctx: EventContext, subscription: Subscription | None) -> PlanPrice | None:
    price = ctx.catalog.plan_for_price_key(ctx.event.price_key)
    if price is None and subscription is not None:
        price = ctx.catalog.plan_for_price_key(subscription.price_key)
    return price


def _apply_event_to_subscription(
    ctx: EventContext,
    subscription: Subscription | None,
    *,
    user_id: UUID,
    price: PlanPrice,
    status: str,
) -> Subscription:
    event = ctx.event
    if subscription is None:
        subscription = Subscription(
            id=uuid4(),
            user_id=user_id,
            provider=event.provider,
            external_ref=event.subscription_ref,
            plan_key=price.plan_key,
            price_key=price.price_key,
            status=status,
            current_period_start=event.period_start,
            current_period_end=event.period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            last_event_at=event.occurred_at,
            created_at=ctx.now_utc,
            updated_at=ctx.now_utc,
        )
        ctx.session.add(subscription)
        return subscription

    subscription.plan_key = price.plan_key
    subscription.price_key = price.price_key
    subscription.status = status
    if event.period_start is not None:
        subscription.current_period_start = event.period_start
    if event.period_end is not None:
        subscription.current_period_end = event.period_end
    subscription.cancel_at_period_end = event.cancel_at_period_end
    subscription.last_event_at = event.occurred_at
    subscription.updated_at = ctx.now_utc
    return subscription


async def _live_windows(ctx: EventContext, subscription: Subscription) -> list[Entitlement]:
    windows = await EntitlementsRepo.list_for_subscription_for_update(
        ctx.session,
        subscription_id=subscription.id,
    )
    return [w for w in windows if w.status in {ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED}]


async def apply_subscription_updated(ctx: EventContext) -> GrantOutcome:
    event = ctx.event
    status = event.subscription_status or "active"
    if status == SUBSCRIPTION_CANCELED:
        return await apply_subscription_canceled(ctx)

    subscription = await _load_subscription(ctx)
    user_id = await _subscription_user(ctx, subscription)
    outcome = GrantOutcome(action="noop", user_id=user_id)
    if subscription is not None and not _check_ordering(ctx, subscription):
        outcome.action = "stale"
        return outcome

    price = _resolve_price(ctx, subscription)
    if price is None:
        raise NormalizationError(
            NormalizationErrorKind.UNMAPPED_PLAN,
            f"{event.provider} subscription {event.subscription_ref!r} names no known plan",
        )

    subscription = _apply_event_to_subscription(
        ctx,
        subscription,
        user_id=user_id,
        price=price,
        status=status,
    )
    await ctx.session.flush()

    if status not in SUBSCRIPTION_GRANTING_STATUSES:
        # past_due keeps access until the period ends; incomplete never granted any.
        outcome.action = "subscription_updated"
        outcome.detail = status
        return outcome

    period_start = event.period_start or subscription.current_period_start or event.occurred_at
    period_end = (
        event.period_end
        or subscription.current_period_end
        or advance_by_interval(period_start, price.interval)
    )

    windows = await _live_windows(ctx, subscription)
    same_plan = [w for w in windows if w.plan_key == price.plan_key]
    for window in windows:
        if window.plan_key == price.plan_key:
            continue
        transition = cap_window(
            snapshot(window),
            ends_at=event.occurred_at,
            reason=REASON_PLAN_CHANGE,
        )
        if transition is not None:
            await record(ctx, outcome, entitlement=window, transition=transition)

    if same_plan:
        window = max(same_plan, key=lambda item: (item.starts_at, str(item.id)))
        if event.cancel_at_period_end:
            transition = cap_window(
                snapshot(window),
                ends_at=period_end,
                reason=REASON_CANCEL_AT_PERIOD_END,
            )
        else:
            transition = extend_window(
                snapshot(window),
                ends_at=period_end,
                reason=REASON_SUBSCRIPTION,
            )
        if transition is not None:
            await record(ctx, outcome, entitlement=window, transition=transition)
            outcome.action = "extended"
        return outcome

    starts_at = period_start if not windows else max(period_start, event.occurred_at)
    if period_end <= starts_at:
        outcome.detail = "period_already_over"
        return outcome
    existing = await EntitlementsRepo.get_by_window_key_for_update(
        ctx.session,
        user_id=user_id,
        plan_key=price.plan_key,
        starts_at=starts_at,
    )
    if existing is not None:
        outcome.detail = f"window_key_taken:{existing.status}"
        return outcome

    transition = grant_window(
        plan_key=price.plan_key,
        source=event.provider,
        starts_at=starts_at,
        ends_at=period_end,
        now_utc=ctx.now_utc,
        subscription_id=subscription.id,
        reason=REASON_SUBSCRIPTION,
    )
    await record(
        ctx,
        outcome,
        entitlement=None,
        transition=transition,
        metadata={"price_key": price.price_key, "payment_refs": []},
    )
    outcome.action = "granted"
    return outcome


async def apply_subscription_canceled(ctx: EventContext) -> GrantOutcome:
    event = ctx.event
    subscription = await _load_subscription(ctx)
    if subscription is None:
        price = _resolve_price(ctx, None)
        if price is None:
            logger.warning(
                "subscription_cancel_for_unknown_subscription",
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                subscription_ref=event.subscription_ref,
            )
            return GrantOutcome(action="noop", detail="unknown_subscription")
        user_id = await _subscription_user(ctx, None)
        _apply_event_to_subscription(
            ctx,
            None,
            user_id=user_id,
            price=price,
            status=SUBSCRIPTION_CANCELED,
        )
        await ctx.session.flush()
        return GrantOutcome(action="subscription_updated", user_id=user_id, detail="canceled")

    user_id = await _subscription_user(ctx, subscription)
    outcome = GrantOutcome(action="noop", user_id=user_id)
    if not _check_ordering(ctx, subscription):
        outcome.action = "stale"
        return outcome

    period_end = event.period_end or subscription.current_period_end
    subscription.status = SUBSCRIPTION_CANCELED
    subscription.canceled_at = event.occurred_at
    subscription.cancel_at_period_end = event.cancel_at_period_end
    if event.period_end is not None:
        subscription.current_period_end = event.period_end
    subscription.last_event_at = event.occurred_at
    subscription.updated_at = ctx.now_utc

    windows = await _live_windows(ctx, subscription)
    for window in windows:
        state = snapshot(window)
        if event.cancel_at_period_end and period_end is not None:
            transition = cap_window(state, ends_at=period_end, reason=REASON_CANCEL_AT_PERIOD_END)
        else:
            transition = revoke_window(state, reason=REASON_CANCELED)
        if transition is not None:
            await record(ctx, outcome, entitlement=window, transition=transition)

    outcome.action = "canceled"
    return outcome
