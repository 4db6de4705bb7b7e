from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from uuid import UUID, uuid4

import structlog

from app.db.models.reconciliation_jobs import ReconciliationJob
from app.db.models.reconciliation_runs import ReconciliationRun
from app.db.repo.reconciliation_jobs_repo import ReconciliationJobsRepo
from app.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from app.db.session import SessionLocal
from app.reconciliation.constants import (
    JOB_ENTITLEMENTS_AUDIT,
    JOB_PROVIDER_SETTLEMENTS,
    JOB_TYPES,
    STATUS_QUEUED,
    STATUS_RUNNING,
)
from app.reconciliation.errors import JobNotFoundError

logger = structlog.get_logger(__name__)

DAILY_CREATED_BY = "scheduler"


def validate_job_scope(
    *,
    job_type: str,
    provider: str | None,
    date_from: date,
    date_to: date,
) -> None:
    if job_type not in JOB_TYPES:
        raise ValueError(f"unknown reconciliation job type {job_type!r}")
    if job_type == JOB_PROVIDER_SETTLEMENTS and provider is None:
        raise ValueError("provider_settlements jobs need a provider")
    if date_from > date_to:
        raise ValueError("date_from must not be after date_to")


async def enqueue(
    *,
    job_type: str,
    provider: str | None,
    date_from: date,
    date_to: date,
    params: dict[str, object] | None = None,
    created_by: str | None = None,
    now_utc: datetime | None = None,
) -> UUID:
    """Queue a job for a window; an unfinished job for the same scope is reused."""
    validate_job_scope(job_type=job_type, provider=provider, date_from=date_from, date_to=date_to)
    now_utc = now_utc or datetime.now(timezone.utc)

    async with SessionLocal.begin() as session:
        existing = await ReconciliationJobsRepo.find_for_window(
            session,
            job_type=job_type,
            provider=provider,
            date_from=date_from,
            date_to=date_to,
        )
        if existing is not None and existing.status in {STATUS_QUEUED, STATUS_RUNNING}:
            return existing.id

        job = await ReconciliationJobsRepo.create(
            session,
            job=ReconciliationJob(
                id=uuid4(),
                job_type=job_type,
                provider=provider,
                date_from=date_from,
                date_to=date_to,
                params=dict(params or {}),
                status=STATUS_QUEUED,
                attempts=0,
                created_by=created_by,
                scheduled_for=None,
                created_at=now_utc,
                updated_at=now_utc,
            ),
        )
    logger.info(
        "reconciliation_job_enqueued",
        job_id=str(job.id),
        job_type=job_type,
        provider=provider,
        date_from=date_from.isoformat(),
        date_to=date_to.isoformat(),
        created_by=created_by,
    )
    return job.id


async def enqueue_daily(
    *,
    providers: tuple[str, ...],
    now_utc: datetime | None = None,
) -> list[UUID]:
    """Queue yesterday's settlement jobs per provider plus one entitlement audit.

    A window that already has a job of the same type is skipped, whatever its status.
    """
    now_utc = now_utc or datetime.now(timezone.utc)
    day = (now_utc - timedelta(days=1)).date()
    scopes = [(JOB_PROVIDER_SETTLEMENTS, provider) for provider in providers]
    scopes.append((JOB_ENTITLEMENTS_AUDIT, None))

    job_ids: list[UUID] = []
    for job_type, provider in scopes:
        async with SessionLocal.begin() as session:
            existing = await ReconciliationJobsRepo.find_for_window(
                session,
                job_type=job_type,
                provider=provider,
                date_from=day,
                date_to=day,
            )
        if existing is not None:
            continue
        job_ids.append(
            await enqueue(
                job_type=job_type,
                provider=provider,
                date_from=day,
                date_to=day,
                created_by=DAILY_CREATED_BY,
                now_utc=now_utc,
            )
        )
    return job_ids


async def cancel(job_id: UUID, *, now_utc: datetime | None = None) -> bool:
    """Cancel a queued or running job; a running job stops before its next finding."""
    now_utc = now_utc or datetime.now(timezone.utc)
    async with SessionLocal.begin() as session:
        job = await ReconciliationJobsRepo.get_by_id(session, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        cancelled = await ReconciliationJobsRepo.try_cancel(session, job_id=job_id, now_utc=now_utc)
    if cancelled:
        logger.info("reconciliation_job_cancelled", job_id=str(job_id))
    return cancelled


async def get_job(job_id: UUID) -> tuple[ReconciliationJob, list[ReconciliationRun]]:
    async with SessionLocal.begin() as session:
        job = await ReconciliationJobsRepo.get_by_id(session, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        runs = await ReconciliationRunsRepo.list_for_job(session, job_id)
    return job, runs
