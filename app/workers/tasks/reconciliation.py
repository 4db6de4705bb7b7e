from __future__ import annotations

import structlog
from celery.schedules import crontab

from app.billing.normalizers import parse_provider_list
from app.core.config import get_settings
from app.reconciliation import ReconciliationService
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


async def enqueue_daily_reconciliation_async() -> dict[str, object]:
    providers = parse_provider_list(get_settings().billing_providers)
    job_ids = await ReconciliationService.enqueue_daily(providers=providers)
    result: dict[str, object] = {
        "providers": list(providers),
        "enqueued": len(job_ids),
        "job_ids": [str(job_id) for job_id in job_ids],
    }
    logger.info("reconciliation_daily_enqueue_finished", **result)
    return result


async def run_due_reconciliation_jobs_async(*, limit: int = 10) -> dict[str, int]:
    summaries = await ReconciliationService.run_due_jobs(limit=limit)
    result: dict[str, int] = {"runs": len(summaries)}
    for summary in summaries:
        result[summary.status] = result.get(summary.status, 0) + 1
    logger.info("reconciliation_due_jobs_finished", **result)
    return result


@celery_app.task(name="app.workers.tasks.reconciliation.enqueue_daily_reconciliation")
def enqueue_daily_reconciliation() -> dict[str, object]:
    return run_async_job(
        enqueue_daily_reconciliation_async(),
        job="enqueue_daily_reconciliation",
    )


@celery_app.task(name="app.workers.tasks.reconciliation.run_due_reconciliation_jobs")
def run_due_reconciliation_jobs(limit: int = 10) -> dict[str, int]:
    return run_async_job(
        run_due_reconciliation_jobs_async(limit=limit),
        job="run_due_reconciliation_jobs",
    )


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "reconciliation-enqueue-daily-0330": {
            "task": "app.workers.tasks.reconciliation.enqueue_daily_reconciliation",
            "schedule": crontab(hour=3, minute=30),
            "options": {"queue": "q_normal"},
        },
        "reconciliation-run-due-jobs-every-5-minutes": {
            "task": "app.workers.tasks.reconciliation.run_due_reconciliation_jobs",
            "schedule": 300.0,
            "options": {"queue": "q_low"},
        },
    }
)
