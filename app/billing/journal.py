from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import ORIGIN_WEBHOOK
from app.billing.errors import TransientIngestError
from app.billing.types import JournalDeliveryResult
from app.db.repo.provider_events_repo import ProviderEventsRepo

logger = structlog.get_logger(__name__)


async def record_delivery(
    session: AsyncSession,
    *,
    provider: str,
    provider_event_id: str,
    event_type: str,
    payload: Mapping[str, object],
    received_at: datetime,
    origin: str = ORIGIN_WEBHOOK,
) -> JournalDeliveryResult:
    """Journal one delivery; exactly one concurrent caller per key sees a first delivery.

    The insert is a single ON CONFLICT DO NOTHING statement, so concurrent callers for the
    same key serialize on the unique index and the losers fall through to the redelivery
    counter.
    """
    journal_entry_id = await ProviderEventsRepo.try_insert_first_delivery(
        session,
        provider=provider,
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=dict(payload),
        received_at=received_at,
        origin=origin,
    )
    if journal_entry_id is not None:
        return JournalDeliveryResult(
            journal_entry_id=journal_entry_id,
            is_first_delivery=True,
            delivery_attempts=1,
        )

    redelivery = await ProviderEventsRepo.mark_redelivery(
        session,
        provider=provider,
        provider_event_id=provider_event_id,
    )
    if redelivery is None:
        raise TransientIngestError(
            f"journal slot for {provider}:{provider_event_id} vanished during upsert"
        )

    journal_entry_id, attempts = redelivery
    logger.info(
        "payment_event_redelivered",
        provider=provider,
        provider_event_id=provider_event_id,
        delivery_attempts=attempts,
        origin=origin,
    )
    return JournalDeliveryResult(
        journal_entry_id=journal_entry_id,
        is_first_delivery=False,
        delivery_attempts=attempts,
    )
