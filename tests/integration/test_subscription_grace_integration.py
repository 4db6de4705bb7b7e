from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from app.billing.ingestion import ingest
from app.billing.resolver import current_plan
from app.db.repo.subscriptions_repo import SubscriptionsRepo
from app.db.session import SessionLocal
from tests.integration.billing_fixtures import ledger_entries_for_user, recent, subscription_event


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_access_until_period_end() -> None:
    user_id = uuid4()
    period_start = recent(hours=24)
    period_end = period_start + timedelta(days=30)
    common = {
        "subscription_id": "I-GRACE-1",
        "user_id": user_id,
        "period_start": period_start,
        "period_end": period_end,
    }

    activated = await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUB-1",
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            occurred_at=period_start,
            **common,
        ),
    )
    cancelled = await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUB-2",
            event_type="BILLING.SUBSCRIPTION.CANCELLED",
            occurred_at=period_start + timedelta(hours=2),
            status="CANCELLED",
            **common,
        ),
    )

    assert activated.process is not None and activated.process.status == "applied"
    assert cancelled.process is not None and cancelled.process.status == "applied"

    async with SessionLocal.begin() as session:
        plan = await current_plan(session, user_id=user_id)
        subscription = await SubscriptionsRepo.get_by_external_ref_for_update(
            session,
            provider="paypal",
            external_ref="I-GRACE-1",
        )

    assert plan.plan_key == "pro"
    assert plan.valid_until == period_end
    assert subscription is not None
    assert subscription.status == "canceled"
    assert subscription.cancel_at_period_end is True

    async with SessionLocal.begin() as session:
        after_period = await current_plan(
            session,
            user_id=user_id,
            at=period_end + timedelta(seconds=1),
        )
    assert after_period.plan_key == "free"
    assert [entry.action for entry in await ledger_entries_for_user(user_id)][0] == "grant"


@pytest.mark.asyncio
async def test_stale_subscription_event_does_not_reopen_access() -> None:
    user_id = uuid4()
    period_start = recent(hours=24)
    period_end = period_start + timedelta(days=30)
    common = {
        "subscription_id": "I-GRACE-2",
        "user_id": user_id,
        "period_start": period_start,
        "period_end": period_end,
    }

    await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUB-3",
            event_type="BILLING.SUBSCRIPTION.EXPIRED",
            occurred_at=period_start + timedelta(hours=5),
            status="EXPIRED",
            **common,
        ),
    )
    late = await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUB-4",
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            occurred_at=period_start,
            **common,
        ),
    )

    assert late.process is not None
    assert late.process.outcome is not None
    assert late.process.outcome.action == "stale"
    async with SessionLocal.begin() as session:
        assert (await current_plan(session, user_id=user_id)).plan_key == "free"
