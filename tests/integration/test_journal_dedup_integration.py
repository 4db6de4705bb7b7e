from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from app.billing.ingestion import accept_delivery, ingest, process_journal_entry
from tests.integration.billing_fixtures import (
    capture_completed,
    journal_entries,
    ledger_entries_for_user,
    recent,
)


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_journal_once() -> None:
    user_id = uuid4()
    payload = capture_completed(
        event_id="WH-DEDUP-1",
        capture_id="CAP-DEDUP-1",
        user_id=user_id,
        occurred_at=recent(),
    )

    deliveries = await asyncio.gather(
        *(accept_delivery(provider="paypal", payload=payload) for _ in range(5))
    )

    journal_ids = {delivery.journal_entry_id for _, delivery in deliveries}
    assert len(journal_ids) == 1
    assert sum(1 for _, delivery in deliveries if delivery.is_first_delivery) == 1

    rows = await journal_entries("WH-DEDUP-1")
    assert len(rows) == 1
    assert rows[0].delivery_attempts == 5
    assert rows[0].processed_at is None


@pytest.mark.asyncio
async def test_concurrent_processing_applies_entry_once() -> None:
    user_id = uuid4()
    payload = capture_completed(
        event_id="WH-DEDUP-2",
        capture_id="CAP-DEDUP-2",
        user_id=user_id,
        occurred_at=recent(),
    )
    _, delivery = await accept_delivery(provider="paypal", payload=payload)

    results = await asyncio.gather(
        *(process_journal_entry(delivery.journal_entry_id) for _ in range(3))
    )

    statuses = sorted(result.status for result in results)
    assert statuses == ["already_processed", "already_processed", "applied"]
    assert len(await ledger_entries_for_user(user_id)) == 1


@pytest.mark.asyncio
async def test_redelivery_after_processing_is_acknowledged_without_new_effects() -> None:
    user_id = uuid4()
    payload = capture_completed(
        event_id="WH-DEDUP-3",
        capture_id="CAP-DEDUP-3",
        user_id=user_id,
        occurred_at=recent(),
    )

    first = await ingest(provider="paypal", payload=payload)
    second = await ingest(provider="paypal", payload=payload)

    assert first.journal.is_first_delivery is True
    assert first.process is not None and first.process.status == "applied"
    assert second.journal.is_first_delivery is False
    assert second.process is not None and second.process.status == "already_processed"
    assert len(await ledger_entries_for_user(user_id)) == 1
