from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.constants import ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED
from app.billing.errors import NormalizationError
from app.billing.grants import GrantService
from app.billing.normalizers import NormalizerRegistry
from app.db.models.entitlements import Entitlement
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.ledger_repo import LedgerRepo
from app.db.repo.provider_events_repo import ProviderEventsRepo
from app.reconciliation.constants import MATCH_WINDOW_PADDING_HOURS
from app.reconciliation.diff import internal_kind_status
from app.reconciliation.types import EntitlementRecord, InternalPaymentRecord

logger = structlog.get_logger(__name__)

_LIVE_STATUSES = frozenset({ENTITLEMENT_ACTIVE, ENTITLEMENT_SCHEDULED})


async def load_internal_payment_records(
    session: AsyncSession,
    *,
    provider: str,
    window_start: datetime,
    window_end: datetime,
    registry: NormalizerRegistry,
) -> list[InternalPaymentRecord]:
    """Journal entries around the window, normalized, with what the ledger knows of them."""
    padding = timedelta(hours=MATCH_WINDOW_PADDING_HOURS)
    entries = await ProviderEventsRepo.list_for_window(
        session,
        provider=provider,
        received_from=window_start - padding,
        received_to=window_end + padding,
    )

    records: list[InternalPaymentRecord] = []
    funded_cache: dict[str, list[Entitlement]] = {}
    for entry in entries:
        try:
            event = registry.normalize(entry)
        except NormalizationError:
            # Already closed with a finding at ingestion time.
            continue
        kind_status = internal_kind_status(event.type)
        if kind_status is None or event.payment_ref is None:
            continue
        kind, status = kind_status

        if event.payment_ref not in funded_cache:
            funded_cache[event.payment_ref] = await EntitlementsRepo.list_funded_by_payment(
                session,
                source=provider,
                payment_ref=event.payment_ref,
            )
        funded = funded_cache[event.payment_ref]
        applied = await LedgerRepo.has_entries_with_key_prefix(
            session,
            f"{GrantService.event_key(event)}:",
        )
        records.append(
            InternalPaymentRecord(
                journal_entry_id=entry.id,
                provider=provider,
                provider_event_id=entry.provider_event_id,
                kind=kind,
                status=status,
                event_type=event.type,
                payment_ref=event.payment_ref,
                occurred_at=event.occurred_at,
                amount_minor=event.amount_minor,
                currency=event.currency,
                processed=entry.processed_at is not None,
                applied=applied,
                live_entitlement_ids=tuple(
                    item.id for item in funded if item.status in _LIVE_STATUSES
                ),
                funded_entitlement_ids=tuple(item.id for item in funded),
            )
        )
    logger.debug(
        "reconciliation_internal_records_loaded",
        provider=provider,
        journal_entries=len(entries),
        payment_records=len(records),
    )
    return records


async def load_entitlement_records(
    session: AsyncSession,
    *,
    sources: tuple[str, ...],
    window_start: datetime,
    window_end: datetime,
) -> list[EntitlementRecord]:
    entitlements = await EntitlementsRepo.list_for_sources_updated_between(
        session,
        sources=sources,
        updated_from=window_start,
        updated_to=window_end,
    )
    ledger_counts = await LedgerRepo.count_by_entitlement(
        session,
        entitlement_ids=[item.id for item in entitlements],
    )
    records: list[EntitlementRecord] = []
    for item in entitlements:
        refs = (item.metadata_ or {}).get("payment_refs")
        records.append(
            EntitlementRecord(
                entitlement_id=item.id,
                user_id=item.user_id,
                plan_key=item.plan_key,
                source=item.source,
                status=item.status,
                payment_refs=tuple(str(ref) for ref in refs) if isinstance(refs, list) else (),
                ledger_entries=ledger_counts.get(item.id, 0),
            )
        )
    return records
