from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

import structlog

from app.db.models.reconciliation_findings import ReconciliationFinding
from app.db.repo.reconciliation_findings_repo import ReconciliationFindingsRepo
from app.db.session import SessionLocal
from app.reconciliation.errors import FindingNotFoundError
from app.reconciliation.types import DiffFinding

logger = structlog.get_logger(__name__)


def _as_model(
    finding: DiffFinding,
    *,
    job_id: UUID,
    run_id: UUID,
    now_utc: datetime,
) -> ReconciliationFinding:
    details = dict(finding.details)
    if finding.heal is not None:
        details["heal"] = finding.heal.kind
    return ReconciliationFinding(
        id=uuid4(),
        job_id=job_id,
        run_id=run_id,
        journal_entry_id=finding.journal_entry_id,
        diff_type=finding.diff_type,
        provider=finding.provider,
        provider_event_id=finding.provider_event_id,
        subscription_ref=finding.subscription_ref,
        user_id=finding.user_id,
        entitlement_id=finding.entitlement_id,
        expected_amount_minor=finding.expected_amount_minor,
        actual_amount_minor=finding.actual_amount_minor,
        expected_currency=finding.expected_currency,
        actual_currency=finding.actual_currency,
        expected_status=finding.expected_status,
        actual_status=finding.actual_status,
        details=details,
        suggested_action=finding.suggested_action,
        auto_healable=finding.auto_healable,
        resolved=False,
        created_at=now_utc,
    )


async def record_finding(
    finding: DiffFinding,
    *,
    job_id: UUID,
    run_id: UUID,
    now_utc: datetime,
) -> tuple[UUID, bool]:
    """Persist a diff finding unless an open one already covers the same subject.

    Returns the finding id and whether it was newly created.
    """
    async with SessionLocal.begin() as session:
        existing = None
        if finding.provider is not None and finding.provider_event_id is not None:
            existing = await ReconciliationFindingsRepo.get_open_for_event(
                session,
                diff_type=finding.diff_type,
                provider=finding.provider,
                provider_event_id=finding.provider_event_id,
            )
        elif finding.entitlement_id is not None:
            existing = await ReconciliationFindingsRepo.get_open_for_entitlement(
                session,
                diff_type=finding.diff_type,
                entitlement_id=finding.entitlement_id,
            )
        if existing is not None:
            return existing.id, False

        created = await ReconciliationFindingsRepo.create(
            session,
            finding=_as_model(finding, job_id=job_id, run_id=run_id, now_utc=now_utc),
        )
    logger.info(
        "reconciliation_finding_recorded",
        finding_id=str(created.id),
        job_id=str(job_id),
        run_id=str(run_id),
        diff_type=finding.diff_type,
        provider=finding.provider,
        provider_event_id=finding.provider_event_id,
        suggested_action=finding.suggested_action,
        auto_healable=finding.auto_healable,
    )
    return created.id, True


async def mark_resolved(
    finding_id: UUID,
    *,
    actor: str,
    note: str | None = None,
    now_utc: datetime | None = None,
) -> bool:
    """Close a finding; returns False when it was already resolved."""
    now_utc = now_utc or datetime.now(timezone.utc)
    async with SessionLocal.begin() as session:
        finding = await ReconciliationFindingsRepo.get_by_id(session, finding_id)
        if finding is None:
            raise FindingNotFoundError(str(finding_id))
        changed = await ReconciliationFindingsRepo.mark_resolved(
            session,
            finding_id=finding_id,
            resolved_by=actor,
            resolution_note=note,
            resolved_at=now_utc,
        )
    if changed:
        logger.info(
            "reconciliation_finding_resolved",
            finding_id=str(finding_id),
            resolved_by=actor,
        )
    return changed


async def list_open_findings(
    *,
    provider: str | None = None,
    diff_type: str | None = None,
    job_id: UUID | None = None,
    limit: int = 100,
) -> list[ReconciliationFinding]:
    async with SessionLocal.begin() as session:
        return await ReconciliationFindingsRepo.list_open(
            session,
            provider=provider,
            diff_type=diff_type,
            job_id=job_id,
            limit=limit,
        )
