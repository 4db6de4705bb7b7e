from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from app.billing.ingestion import ingest
from app.billing.plans import advance_by_interval
from app.billing.resolver import current_plan
from app.db.models.entitlements import Entitlement
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.subscriptions_repo import SubscriptionsRepo
from app.db.session import SessionLocal
from tests.integration.billing_fixtures import (
    capture_completed,
    capture_refunded,
    dispute_created,
    ledger_entries_for_user,
    recent,
    subscription_event,
)


async def _plan_for(user_id: UUID):
    async with SessionLocal.begin() as session:
        return await current_plan(session, user_id=user_id)


async def _live_windows(user_id: UUID) -> list[Entitlement]:
    async with SessionLocal() as session:
        return await EntitlementsRepo.list_for_user(
            session,
            user_id=user_id,
            statuses=("active", "scheduled"),
        )


def _state(raw: dict[str, object] | None) -> tuple[object, ...] | None:
    if raw is None:
        return None
    ends_at = raw["ends_at"]
    return (
        raw["plan_key"],
        raw["status"],
        datetime.fromisoformat(str(raw["starts_at"])),
        datetime.fromisoformat(str(ends_at)) if ends_at is not None else None,
        raw["subscription_id"],
    )


@pytest.mark.asyncio
async def test_one_off_payments_stack_the_same_in_either_order() -> None:
    first_paid = recent(hours=24 * 15)
    second_paid = first_paid + timedelta(days=10)
    in_order, reversed_order = uuid4(), uuid4()

    async def _pay(user_id: UUID, suffix: str, occurred_at: datetime) -> None:
        result = await ingest(
            provider="paypal",
            payload=capture_completed(
                event_id=f"WH-STACK-{str(user_id)[:8]}-{suffix}",
                capture_id=f"CAP-STACK-{str(user_id)[:8]}-{suffix}",
                user_id=user_id,
                occurred_at=occurred_at,
            ),
        )
        assert result.process is not None and result.process.status == "applied"

    await _pay(in_order, "A", first_paid)
    await _pay(in_order, "B", second_paid)
    await _pay(reversed_order, "B", second_paid)
    await _pay(reversed_order, "A", first_paid)

    expected_end = advance_by_interval(advance_by_interval(first_paid, "month"), "month")
    for user_id in (in_order, reversed_order):
        [window] = await _live_windows(user_id)
        assert window.starts_at == first_paid
        assert window.ends_at == expected_end
        assert len(window.metadata_["payment_refs"]) == 2
        plan = await _plan_for(user_id)
        assert plan.plan_key == "pro"
        assert plan.valid_until == expected_end

    assert [entry.action for entry in await ledger_entries_for_user(in_order)] == [
        "grant",
        "extend",
    ]
    assert [entry.action for entry in await ledger_entries_for_user(reversed_order)] == [
        "grant",
        "update",
    ]


@pytest.mark.asyncio
async def test_dispute_revokes_access_immediately() -> None:
    user_id = uuid4()
    paid_at = recent(hours=3)
    await ingest(
        provider="paypal",
        payload=capture_completed(
            event_id="WH-DISPUTE-PAY-1",
            capture_id="CAP-DISPUTE-1",
            user_id=user_id,
            occurred_at=paid_at,
        ),
    )

    result = await ingest(
        provider="paypal",
        payload=dispute_created(
            event_id="WH-DISPUTE-1",
            dispute_id="PP-D-1",
            capture_id="CAP-DISPUTE-1",
            user_id=user_id,
            occurred_at=paid_at + timedelta(hours=1),
        ),
    )

    assert result.process is not None
    assert result.process.outcome is not None
    assert result.process.outcome.action == "revoked"
    assert (await _plan_for(user_id)).plan_key == "free"
    entries = await ledger_entries_for_user(user_id)
    assert [entry.action for entry in entries] == ["grant", "revoke"]
    assert entries[-1].reason == "dispute"


def _subscription_scenario(subscription_id: str, user_id: UUID) -> dict[str, object]:
    period_start = recent(hours=24)
    return {
        "subscription_id": subscription_id,
        "user_id": user_id,
        "period_start": period_start,
        "period_end": period_start + timedelta(days=30),
    }


@pytest.mark.asyncio
async def test_expired_subscription_revokes_access_now() -> None:
    user_id = uuid4()
    common = _subscription_scenario("I-EXPIRE-1", user_id)
    await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-EXPIRE-1",
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            occurred_at=common["period_start"],
            **common,
        ),
    )
    assert (await _plan_for(user_id)).plan_key == "pro"

    await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-EXPIRE-2",
            event_type="BILLING.SUBSCRIPTION.EXPIRED",
            occurred_at=common["period_start"] + timedelta(hours=2),
            status="EXPIRED",
            **common,
        ),
    )

    assert (await _plan_for(user_id)).plan_key == "free"
    entries = await ledger_entries_for_user(user_id)
    assert [entry.action for entry in entries] == ["grant", "revoke"]
    assert entries[-1].reason == "subscription_canceled"


@pytest.mark.asyncio
async def test_suspended_subscription_keeps_access_until_period_end() -> None:
    user_id = uuid4()
    common = _subscription_scenario("I-SUSPEND-1", user_id)
    await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUSPEND-1",
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            occurred_at=common["period_start"],
            **common,
        ),
    )

    result = await ingest(
        provider="paypal",
        payload=subscription_event(
            event_id="WH-SUSPEND-2",
            event_type="BILLING.SUBSCRIPTION.SUSPENDED",
            occurred_at=common["period_start"] + timedelta(hours=2),
            status="SUSPENDED",
            **common,
        ),
    )

    assert result.process is not None and result.process.status == "applied"
    plan = await _plan_for(user_id)
    assert plan.plan_key == "pro"
    assert plan.valid_until == common["period_end"]
    async with SessionLocal.begin() as session:
        subscription = await SubscriptionsRepo.get_by_external_ref_for_update(
            session,
            provider="paypal",
            external_ref="I-SUSPEND-1",
        )
    assert subscription is not None and subscription.status == "past_due"
    assert [entry.action for entry in await ledger_entries_for_user(user_id)] == ["grant"]


@pytest.mark.asyncio
async def test_replaying_every_event_leaves_a_complete_unchanged_ledger() -> None:
    user_id = uuid4()
    first_paid = recent(hours=24 * 15)
    common = _subscription_scenario("I-REPLAY-1", user_id)
    payloads = [
        subscription_event(
            event_id="WH-REPLAY-SUB-1",
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            occurred_at=common["period_start"],
            **common,
        ),
        capture_completed(
            event_id="WH-REPLAY-PAY-1",
            capture_id="CAP-REPLAY-1",
            user_id=user_id,
            occurred_at=first_paid,
        ),
        capture_completed(
            event_id="WH-REPLAY-PAY-2",
            capture_id="CAP-REPLAY-2",
            user_id=user_id,
            occurred_at=first_paid + timedelta(days=10),
        ),
        capture_refunded(
            event_id="WH-REPLAY-REF-2",
            refund_id="REF-REPLAY-2",
            capture_id="CAP-REPLAY-2",
            occurred_at=recent(hours=2),
        ),
        subscription_event(
            event_id="WH-REPLAY-SUB-2",
            event_type="BILLING.SUBSCRIPTION.CANCELLED",
            occurred_at=common["period_start"] + timedelta(hours=3),
            status="CANCELLED",
            **common,
        ),
    ]
    for payload in payloads:
        await ingest(provider="paypal", payload=payload)
    first_pass = await ledger_entries_for_user(user_id)

    for payload in [*payloads, *reversed(payloads)]:
        await ingest(provider="paypal", payload=payload)
    entries = await ledger_entries_for_user(user_id)

    assert [entry.id for entry in entries] == [entry.id for entry in first_pass]

    async with SessionLocal() as session:
        result = await session.execute(select(Entitlement).where(Entitlement.user_id == user_id))
        entitlements = {row.id: row for row in result.scalars().all()}

    chains: dict[UUID, list] = defaultdict(list)
    for entry in entries:
        chains[entry.entitlement_id].append(entry)
    assert set(chains) == set(entitlements)

    for entitlement_id, chain in chains.items():
        assert chain[0].action == "grant"
        assert chain[0].before_state is None
        for previous, entry in zip(chain, chain[1:]):
            assert _state(entry.before_state) == _state(previous.after_state)
        entitlement = entitlements[entitlement_id]
        final = _state(chain[-1].after_state)
        assert final is not None
        assert final[1] == entitlement.status
        assert final[2] == entitlement.starts_at
        assert final[3] == entitlement.ends_at
