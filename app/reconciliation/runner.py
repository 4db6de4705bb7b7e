from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from uuid import UUID, uuid4

import structlog

from app.billing.constants import PROVIDERS
from app.billing.normalizers import NormalizerRegistry, get_normalizer_registry
from app.billing.plans import PlanCatalog, get_plan_catalog
from app.core.config import Settings, get_settings
from app.db.models.reconciliation_runs import ReconciliationRun
from app.db.repo.reconciliation_jobs_repo import ReconciliationJobsRepo
from app.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from app.db.session import SessionLocal
from app.reconciliation.constants import (
    JOB_PROVIDER_SETTLEMENTS,
    RESOLVED_BY_RECONCILIATION,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_QUEUED,
    STATUS_RUNNING,
)
from app.reconciliation.diff import (
    diff_entitlements_audit,
    diff_provider_settlements,
    empty_stats,
    run_status,
    window_bounds,
)
from app.reconciliation.errors import JobNotFoundError, JobNotRunnableError, ProviderFetchError
from app.reconciliation.findings import mark_resolved, record_finding
from app.reconciliation.healing import heal
from app.reconciliation.providers import ProviderRecordSource, build_provider_source
from app.reconciliation.snapshot import load_entitlement_records, load_internal_payment_records
from app.reconciliation.types import DiffResult, RunSummary
from app.services.alerts import send_ops_alert

logger = structlog.get_logger(__name__)

SourceFactory = Callable[[str, Settings], ProviderRecordSource]


@dataclass(frozen=True, slots=True)
class _JobScope:
    job_id: UUID
    run_id: UUID
    job_type: str
    provider: str | None
    date_from: date
    date_to: date
    dry_run: bool


async def _claim(job_id: UUID, *, now_utc: datetime) -> _JobScope:
    async with SessionLocal.begin() as session:
        job = await ReconciliationJobsRepo.get_by_id(session, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        # Compare-and-set: only one runner moves a job out of queued.
        if not await ReconciliationJobsRepo.try_mark_running(
            session,
            job_id=job_id,
            now_utc=now_utc,
        ):
            raise JobNotRunnableError(job.status)
        run = await ReconciliationRunsRepo.create(
            session,
            run=ReconciliationRun(
                id=uuid4(),
                job_id=job_id,
                started_at=now_utc,
                status=STATUS_RUNNING,
                stats={},
            ),
        )
        return _JobScope(
            job_id=job.id,
            run_id=run.id,
            job_type=job.job_type,
            provider=job.provider,
            date_from=job.date_from,
            date_to=job.date_to,
            dry_run=bool((job.params or {}).get("dry_run", False)),
        )


async def _is_cancelled(job_id: UUID) -> bool:
    async with SessionLocal.begin() as session:
        return await ReconciliationJobsRepo.get_status(session, job_id) == STATUS_CANCELLED


async def _compute_diff(
    scope: _JobScope,
    *,
    settings: Settings,
    registry: NormalizerRegistry,
    source_factory: SourceFactory,
) -> DiffResult:
    window_start, window_end = window_bounds(scope.date_from, scope.date_to)

    if scope.job_type == JOB_PROVIDER_SETTLEMENTS:
        if scope.provider is None:
            raise ProviderFetchError("provider_settlements job has no provider")
        source = source_factory(scope.provider, settings)
        provider_records = await source.fetch_records(
            window_start=window_start,
            window_end=window_end,
        )
        async with SessionLocal.begin() as session:
            internal_records = await load_internal_payment_records(
                session,
                provider=scope.provider,
                window_start=window_start,
                window_end=window_end,
                registry=registry,
            )
        return diff_provider_settlements(
            provider_records=provider_records,
            internal_records=internal_records,
            window_start=window_start,
            window_end=window_end,
            tolerance_minor=max(0, int(settings.recon_amount_tolerance_minor)),
        )

    providers = (scope.provider,) if scope.provider else registry.providers
    internal_records = []
    async with SessionLocal.begin() as session:
        for provider in providers:
            internal_records.extend(
                await load_internal_payment_records(
                    session,
                    provider=provider,
                    window_start=window_start,
                    window_end=window_end,
                    registry=registry,
                )
            )
        entitlements = await load_entitlement_records(
            session,
            sources=tuple(provider for provider in providers if provider in PROVIDERS),
            window_start=window_start,
            window_end=window_end,
        )
    return diff_entitlements_audit(internal_records=internal_records, entitlements=entitlements)


async def _finish(
    scope: _JobScope,
    *,
    status: str,
    stats: dict[str, int],
    error: str | None,
    settings: Settings,
    now_utc: datetime,
) -> RunSummary:
    requeued = False
    attempts = 0
    async with SessionLocal.begin() as session:
        job = await ReconciliationJobsRepo.get_by_id_for_update(session, scope.job_id)
        run = await ReconciliationRunsRepo.get_by_id_for_update(session, scope.run_id)
        if job is None or run is None:
            raise JobNotFoundError(str(scope.job_id))
        if job.status == STATUS_CANCELLED:
            status = STATUS_CANCELLED

        await ReconciliationRunsRepo.finish(
            session,
            run=run,
            status=status,
            finished_at=now_utc,
            stats=dict(stats),
            error=error,
        )
        job.updated_at = now_utc
        if status == STATUS_FAILED:
            job.attempts += 1
            attempts = job.attempts
            job.last_error = error
            if job.attempts < max(1, int(settings.recon_max_attempts)):
                backoff = max(0, int(settings.recon_retry_backoff_seconds)) * job.attempts
                job.status = STATUS_QUEUED
                job.scheduled_for = now_utc + timedelta(seconds=backoff)
                requeued = True
            else:
                job.status = STATUS_FAILED
        elif job.status != STATUS_CANCELLED:
            job.status = status
            job.last_error = None

    summary = RunSummary(
        job_id=scope.job_id,
        run_id=scope.run_id,
        status=status,
        stats=dict(stats),
        error=error,
    )
    log_payload = {
        "job_id": str(scope.job_id),
        "run_id": str(scope.run_id),
        "job_type": scope.job_type,
        "provider": scope.provider,
        "status": status,
        **stats,
    }
    if status == STATUS_FAILED:
        logger.warning(
            "reconciliation_run_failed",
            error=error,
            attempts=attempts,
            requeued=requeued,
            **log_payload,
        )
        if not requeued:
            await send_ops_alert(
                event="billing_reconciliation_run_failed",
                payload={**log_payload, "error": error, "attempts": attempts},
            )
    elif status == STATUS_PARTIAL:
        logger.warning("reconciliation_run_partial", **log_payload)
        await send_ops_alert(event="billing_reconciliation_run_partial", payload=log_payload)
    else:
        logger.info("reconciliation_run_finished", **log_payload)
    return summary


async def _execute(
    scope: _JobScope,
    stats: dict[str, int],
    *,
    settings: Settings,
    registry: NormalizerRegistry,
    catalog: PlanCatalog,
    source_factory: SourceFactory,
) -> str:
    diff = await _compute_diff(
        scope,
        settings=settings,
        registry=registry,
        source_factory=source_factory,
    )
    stats["scanned_provider"] = diff.scanned_provider
    stats["scanned_internal"] = diff.scanned_internal
    stats["matched"] = diff.matched

    for finding in diff.findings:
        if await _is_cancelled(scope.job_id):
            return STATUS_CANCELLED

        finding_id, created = await record_finding(
            finding,
            job_id=scope.job_id,
            run_id=scope.run_id,
            now_utc=datetime.now(timezone.utc),
        )
        if created:
            stats["findings"] += 1
        else:
            # Still open from an earlier run; heal again or keep counting it as open.
            stats["duplicates"] += 1

        if finding.auto_healable and finding.heal is not None and not scope.dry_run:
            if await heal(finding.heal, registry=registry, catalog=catalog):
                await mark_resolved(
                    finding_id,
                    actor=RESOLVED_BY_RECONCILIATION,
                    note=f"auto-healed via {finding.heal.kind}",
                )
                stats["healed"] += 1
                continue
            stats["heal_failed"] += 1
        stats["open"] += 1

    return run_status(open_findings=stats["open"])


async def run_job(
    job_id: UUID,
    *,
    settings: Settings | None = None,
    registry: NormalizerRegistry | None = None,
    catalog: PlanCatalog | None = None,
    source_factory: SourceFactory = build_provider_source,
) -> RunSummary:
    """Execute one run of a queued job.

    Each heal is its own transaction, so cancelling between findings never leaves a
    partial ledger write behind.
    """
    settings = settings or get_settings()
    registry = registry or get_normalizer_registry()
    catalog = catalog or get_plan_catalog()

    scope = await _claim(job_id, now_utc=datetime.now(timezone.utc))
    stats = empty_stats()
    logger.info(
        "reconciliation_run_started",
        job_id=str(scope.job_id),
        run_id=str(scope.run_id),
        job_type=scope.job_type,
        provider=scope.provider,
        dry_run=scope.dry_run,
    )

    try:
        status = await _execute(
            scope,
            stats,
            settings=settings,
            registry=registry,
            catalog=catalog,
            source_factory=source_factory,
        )
    except ProviderFetchError as exc:
        return await _finish(
            scope,
            status=STATUS_FAILED,
            stats=stats,
            error=str(exc),
            settings=settings,
            now_utc=datetime.now(timezone.utc),
        )
    except Exception as exc:
        logger.exception("reconciliation_run_crashed", job_id=str(scope.job_id))
        await _finish(
            scope,
            status=STATUS_FAILED,
            stats=stats,
            error=f"{type(exc).__name__}: {exc}",
            settings=settings,
            now_utc=datetime.now(timezone.utc),
        )
        raise

    return await _finish(
        scope,
        status=status,
        stats=stats,
        error=None,
        settings=settings,
        now_utc=datetime.now(timezone.utc),
    )


async def run_due_jobs(
    *,
    limit: int = 10,
    settings: Settings | None = None,
    source_factory: SourceFactory = build_provider_source,
) -> list[RunSummary]:
    now_utc = datetime.now(timezone.utc)
    async with SessionLocal.begin() as session:
        job_ids = await ReconciliationJobsRepo.list_due_ids(session, now_utc=now_utc, limit=limit)

    summaries: list[RunSummary] = []
    for job_id in job_ids:
        try:
            summaries.append(
                await run_job(job_id, settings=settings, source_factory=source_factory)
            )
        except JobNotRunnableError:
            # Claimed by another worker or cancelled in between.
            continue
        except Exception:
            logger.exception("reconciliation_job_run_error", job_id=str(job_id))
    return summaries
