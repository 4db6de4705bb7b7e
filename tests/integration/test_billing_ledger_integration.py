from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError

from app.billing.ingestion import ingest
from app.db.models.entitlements import Entitlement
from app.db.models.ledger_entries import LedgerEntry
from app.db.session import SessionLocal
from tests.integration.billing_fixtures import (
    capture_completed,
    ledger_entries_for_user,
    recent,
)


async def _granted_entry_id() -> int:
    user_id = uuid4()
    await ingest(
        provider="paypal",
        payload=capture_completed(
            event_id="WH-LEDGER-1",
            capture_id="CAP-LEDGER-1",
            user_id=user_id,
            occurred_at=recent(),
        ),
    )
    entries = await ledger_entries_for_user(user_id)
    assert len(entries) == 1
    return entries[0].id


@pytest.mark.asyncio
async def test_ledger_entries_reject_update_and_delete() -> None:
    entry_id = await _granted_entry_id()

    with pytest.raises(DBAPIError):
        async with SessionLocal.begin() as session:
            await session.execute(
                text("UPDATE ledger_entries SET reason = 'edited' WHERE id = :entry_id"),
                {"entry_id": entry_id},
            )

    with pytest.raises(DBAPIError):
        async with SessionLocal.begin() as session:
            await session.execute(
                text("DELETE FROM ledger_entries WHERE id = :entry_id"),
                {"entry_id": entry_id},
            )


@pytest.mark.asyncio
async def test_every_entitlement_has_a_ledger_entry() -> None:
    for index in range(3):
        await ingest(
            provider="paypal",
            payload=capture_completed(
                event_id=f"WH-LEDGER-ALL-{index}",
                capture_id=f"CAP-LEDGER-ALL-{index}",
                user_id=uuid4(),
                occurred_at=recent(),
            ),
        )

    async with SessionLocal() as session:
        unaccounted = await session.execute(
            select(func.count(Entitlement.id)).where(
                ~select(LedgerEntry.id)
                .where(LedgerEntry.entitlement_id == Entitlement.id)
                .exists()
            )
        )
        total = await session.execute(select(func.count(Entitlement.id)))

    assert int(total.scalar_one()) == 3
    assert int(unaccounted.scalar_one()) == 0
