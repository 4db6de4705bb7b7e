from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError

from app.billing.constants import ORIGIN_RECONCILIATION
from app.billing.errors import BillingError
from app.billing.ingestion import (
    PROCESS_ALREADY_PROCESSED,
    PROCESS_APPLIED,
    accept_delivery,
    process_journal_entry,
    reapply_journal_entry,
)
from app.billing.normalizers import NormalizerRegistry
from app.billing.plans import PlanCatalog
from app.reconciliation.constants import HEAL_INGEST_PROVIDER_RECORD, HEAL_REAPPLY_JOURNAL_ENTRY
from app.reconciliation.types import HealAction

logger = structlog.get_logger(__name__)


async def _ingest_provider_record(
    heal: HealAction,
    *,
    registry: NormalizerRegistry,
    catalog: PlanCatalog,
) -> bool:
    record = heal.provider_record
    if record is None or record.payload is None:
        return False
    # Same path as a live webhook: journal first, then process the journal entry.
    _, delivery = await accept_delivery(
        provider=record.provider,
        payload=record.payload,
        origin=ORIGIN_RECONCILIATION,
        registry=registry,
    )
    result = await process_journal_entry(
        delivery.journal_entry_id,
        registry=registry,
        catalog=catalog,
    )
    return result.status in {PROCESS_APPLIED, PROCESS_ALREADY_PROCESSED}


async def _reapply_journal_entry(
    heal: HealAction,
    *,
    registry: NormalizerRegistry,
    catalog: PlanCatalog,
) -> bool:
    if heal.journal_entry_id is None:
        return False
    outcome = await reapply_journal_entry(
        heal.journal_entry_id,
        registry=registry,
        catalog=catalog,
    )
    return outcome is not None and outcome.mutated


_HEALERS = {
    HEAL_INGEST_PROVIDER_RECORD: _ingest_provider_record,
    HEAL_REAPPLY_JOURNAL_ENTRY: _reapply_journal_entry,
}


async def heal(
    action: HealAction,
    *,
    registry: NormalizerRegistry,
    catalog: PlanCatalog,
) -> bool:
    """Run one heal through the grant engine; False leaves the finding open."""
    healer = _HEALERS.get(action.kind)
    if healer is None:
        return False
    try:
        return await healer(action, registry=registry, catalog=catalog)
    except (BillingError, SQLAlchemyError) as exc:
        logger.warning(
            "reconciliation_heal_failed",
            heal_kind=action.kind,
            journal_entry_id=action.journal_entry_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
