from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError

from app.billing.constants import (
    ACTION_GRANT,
    ACTION_INVESTIGATE,
    DIFF_MISSING_ENTITLEMENT,
    DIFF_STATUS_MISMATCH,
    DIFF_UNPROCESSABLE_EVENT,
    ORIGIN_RECONCILIATION,
    ORIGIN_WEBHOOK,
)
from app.billing.errors import (
    InvariantViolationError,
    NormalizationError,
    NormalizationErrorKind,
    TransientIngestError,
)
from app.billing.grants import GrantService
from app.billing.journal import record_delivery
from app.billing.normalizers import NormalizerRegistry, get_normalizer_registry
from app.billing.plans import PlanCatalog, get_plan_catalog
from app.billing.types import (
    EventEnvelope,
    GrantOutcome,
    IngestResult,
    JournalDeliveryResult,
    ProcessResult,
)
from app.db.models.provider_events import RawProviderEvent
from app.db.models.reconciliation_findings import ReconciliationFinding
from app.db.repo.provider_events_repo import ProviderEventsRepo
from app.db.repo.reconciliation_findings_repo import ReconciliationFindingsRepo
from app.db.session import SessionLocal

logger = structlog.get_logger(__name__)

PROCESS_APPLIED = "applied"
PROCESS_ALREADY_PROCESSED = "already_processed"
PROCESS_MISSING = "missing"
PROCESS_FINDING = "finding"

_NORMALIZATION_DIFF_TYPES = {
    NormalizationErrorKind.UNMAPPED_PLAN: (DIFF_MISSING_ENTITLEMENT, ACTION_GRANT),
    NormalizationErrorKind.UNKNOWN_CUSTOMER: (DIFF_UNPROCESSABLE_EVENT, ACTION_INVESTIGATE),
    NormalizationErrorKind.MALFORMED_PAYLOAD: (DIFF_UNPROCESSABLE_EVENT, ACTION_INVESTIGATE),
    NormalizationErrorKind.UNSUPPORTED_PROVIDER: (DIFF_UNPROCESSABLE_EVENT, ACTION_INVESTIGATE),
}


async def accept_delivery(
    *,
    provider: str,
    payload: Mapping[str, object],
    received_at: datetime | None = None,
    origin: str = ORIGIN_WEBHOOK,
    registry: NormalizerRegistry | None = None,
) -> tuple[EventEnvelope, JournalDeliveryResult]:
    """Durably journal a raw delivery in its own transaction.

    Raises NormalizationError when the payload carries no usable event id and
    TransientIngestError when the journal could not be written.
    """
    registry = registry or get_normalizer_registry()
    envelope = registry.extract_envelope(provider, payload)
    received_at = received_at or datetime.now(timezone.utc)

    try:
        async with SessionLocal.begin() as session:
            delivery = await record_delivery(
                session,
                provider=envelope.provider,
                provider_event_id=envelope.provider_event_id,
                event_type=envelope.event_type,
                payload=payload,
                received_at=received_at,
                origin=origin,
            )
    except (SQLAlchemyError, OSError) as exc:
        logger.warning(
            "payment_event_journal_failed",
            provider=envelope.provider,
            provider_event_id=envelope.provider_event_id,
            error_type=type(exc).__name__,
        )
        raise TransientIngestError(
            f"journal write failed for {envelope.provider}:{envelope.provider_event_id}"
        ) from exc

    logger.info(
        "payment_event_journaled",
        provider=envelope.provider,
        provider_event_id=envelope.provider_event_id,
        event_type=envelope.event_type,
        journal_entry_id=delivery.journal_entry_id,
        first_delivery=delivery.is_first_delivery,
        delivery_attempts=delivery.delivery_attempts,
        origin=origin,
    )
    return envelope, delivery


async def process_journal_entry(
    journal_entry_id: int,
    *,
    registry: NormalizerRegistry | None = None,
    catalog: PlanCatalog | None = None,
    now_utc: datetime | None = None,
) -> ProcessResult:
    """Normalize and apply one journal entry exactly once.

    The journal row is locked for the whole unit, so a redelivery racing the replay sweep
    cannot apply the same entry twice. Grant writes and `processed_at` commit together.
    """
    registry = registry or get_normalizer_registry()
    catalog = catalog or get_plan_catalog()
    now_utc = now_utc or datetime.now(timezone.utc)

    try:
        async with SessionLocal.begin() as session:
            entry = await ProviderEventsRepo.get_by_id_for_update(session, journal_entry_id)
            if entry is None:
                return ProcessResult(journal_entry_id=journal_entry_id, status=PROCESS_MISSING)
            if entry.processed_at is not None:
                return ProcessResult(
                    journal_entry_id=journal_entry_id,
                    status=PROCESS_ALREADY_PROCESSED,
                )

            event = registry.normalize(entry)
            outcome = await GrantService.apply_event(
                session,
                event=event,
                catalog=catalog,
                now_utc=now_utc,
            )
            await ProviderEventsRepo.mark_processed(
                session,
                journal_entry_id=journal_entry_id,
                processed_at=now_utc,
            )
    except NormalizationError as exc:
        return await _close_with_normalization_finding(journal_entry_id, exc, now_utc=now_utc)
    except InvariantViolationError as exc:
        return await _close_with_invariant_finding(journal_entry_id, exc, now_utc=now_utc)

    return ProcessResult(
        journal_entry_id=journal_entry_id,
        status=PROCESS_APPLIED,
        outcome=outcome,
    )


async def ingest(
    *,
    provider: str,
    payload: Mapping[str, object],
    received_at: datetime | None = None,
    origin: str = ORIGIN_WEBHOOK,
    registry: NormalizerRegistry | None = None,
    catalog: PlanCatalog | None = None,
) -> IngestResult:
    _, delivery = await accept_delivery(
        provider=provider,
        payload=payload,
        received_at=received_at,
        origin=origin,
        registry=registry,
    )
    result = await process_journal_entry(
        delivery.journal_entry_id,
        registry=registry,
        catalog=catalog,
    )
    return IngestResult(journal=delivery, process=result)


def _finding_for_entry(
    entry: RawProviderEvent,
    *,
    diff_type: str,
    suggested_action: str,
    details: dict[str, object],
    now_utc: datetime,
) -> ReconciliationFinding:
    return ReconciliationFinding(
        id=uuid4(),
        journal_entry_id=entry.id,
        diff_type=diff_type,
        provider=entry.provider,
        provider_event_id=entry.provider_event_id,
        details=details,
        suggested_action=suggested_action,
        auto_healable=False,
        resolved=False,
        created_at=now_utc,
    )


async def _close_entry_with_finding(
    journal_entry_id: int,
    *,
    diff_type: str,
    suggested_action: str,
    details: dict[str, object],
    now_utc: datetime,
) -> ProcessResult:
    # Runs after the failed unit rolled back, so no partial grant is visible here.
    async with SessionLocal.begin() as session:
        entry = await ProviderEventsRepo.get_by_id_for_update(session, journal_entry_id)
        if entry is None:
            return ProcessResult(journal_entry_id=journal_entry_id, status=PROCESS_MISSING)
        if entry.processed_at is not None:
            return ProcessResult(
                journal_entry_id=journal_entry_id,
                status=PROCESS_ALREADY_PROCESSED,
            )

        finding = await ReconciliationFindingsRepo.get_open_for_event(
            session,
            diff_type=diff_type,
            provider=entry.provider,
            provider_event_id=entry.provider_event_id,
        )
        if finding is None:
            finding = await ReconciliationFindingsRepo.create(
                session,
                finding=_finding_for_entry(
                    entry,
                    diff_type=diff_type,
                    suggested_action=suggested_action,
                    details={**details, "event_type": entry.event_type, "origin": entry.origin},
                    now_utc=now_utc,
                ),
            )
        await ProviderEventsRepo.mark_processed(
            session,
            journal_entry_id=journal_entry_id,
            processed_at=now_utc,
        )
        return ProcessResult(
            journal_entry_id=journal_entry_id,
            status=PROCESS_FINDING,
            finding_id=finding.id,
        )


async def _close_with_normalization_finding(
    journal_entry_id: int,
    exc: NormalizationError,
    *,
    now_utc: datetime,
) -> ProcessResult:
    diff_type, suggested_action = _NORMALIZATION_DIFF_TYPES[exc.kind]
    logger.warning(
        "payment_event_normalization_failed",
        journal_entry_id=journal_entry_id,
        kind=exc.kind.value,
        detail=exc.detail,
        diff_type=diff_type,
    )
    return await _close_entry_with_finding(
        journal_entry_id,
        diff_type=diff_type,
        suggested_action=suggested_action,
        details={"error_kind": exc.kind.value, "detail": exc.detail},
        now_utc=now_utc,
    )


async def _close_with_invariant_finding(
    journal_entry_id: int,
    exc: InvariantViolationError,
    *,
    now_utc: datetime,
) -> ProcessResult:
    context = {key: str(value) for key, value in exc.context.items()}
    logger.error(
        "payment_event_invariant_violation",
        journal_entry_id=journal_entry_id,
        error=str(exc),
        context=context,
    )
    return await _close_entry_with_finding(
        journal_entry_id,
        diff_type=DIFF_STATUS_MISMATCH,
        suggested_action=ACTION_INVESTIGATE,
        details={"error": str(exc), "context": context},
        now_utc=now_utc,
    )


async def reapply_journal_entry(
    journal_entry_id: int,
    *,
    origin: str = ORIGIN_RECONCILIATION,
    registry: NormalizerRegistry | None = None,
    catalog: PlanCatalog | None = None,
    now_utc: datetime | None = None,
) -> GrantOutcome | None:
    """Re-run an already journaled entry through the grant engine under a new origin.

    Used by reconciliation healing; the grant engine's own idempotency keys make this a
    no-op when the entry's side effects are already in the ledger.
    """
    registry = registry or get_normalizer_registry()
    catalog = catalog or get_plan_catalog()
    now_utc = now_utc or datetime.now(timezone.utc)

    async with SessionLocal.begin() as session:
        entry = await ProviderEventsRepo.get_by_id_for_update(session, journal_entry_id)
        if entry is None:
            return None
        event = replace(registry.normalize(entry), origin=origin)
        outcome = await GrantService.apply_event(
            session,
            event=event,
            catalog=catalog,
            now_utc=now_utc,
        )
        await ProviderEventsRepo.mark_processed(
            session,
            journal_entry_id=journal_entry_id,
            processed_at=now_utc,
        )
    return outcome
