from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from app.billing.ingestion import process_journal_entry
from app.core.config import get_settings
from app.db.repo.provider_events_repo import ProviderEventsRepo
from app.db.session import SessionLocal
from app.services.alerts import send_ops_alert
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

BACKLOG_ALERT_MULTIPLIER = 5


async def replay_unprocessed_events_async(
    *,
    batch_size: int = 200,
    stale_seconds: int | None = None,
) -> dict[str, int]:
    """Re-run processing for journal entries left unprocessed past the staleness threshold."""
    settings = get_settings()
    resolved_stale_seconds = max(
        1,
        int(stale_seconds if stale_seconds is not None else settings.journal_replay_stale_seconds),
    )
    now_utc = datetime.now(timezone.utc)
    received_before = now_utc - timedelta(seconds=resolved_stale_seconds)

    async with SessionLocal.begin() as session:
        candidate_ids = await ProviderEventsRepo.list_unprocessed_ids(
            session,
            received_before=received_before,
            limit=batch_size,
        )

    summary: dict[str, int] = {
        "examined": len(candidate_ids),
        "applied": 0,
        "already_processed": 0,
        "finding": 0,
        "missing": 0,
        "errors": 0,
    }
    for journal_entry_id in candidate_ids:
        try:
            result = await process_journal_entry(journal_entry_id)
        except Exception:
            summary["errors"] += 1
            logger.exception("payment_event_replay_error", journal_entry_id=journal_entry_id)
            continue
        summary[result.status] = summary.get(result.status, 0) + 1

    if summary["errors"] > 0:
        await send_ops_alert(event="billing_replay_errors_detected", payload=summary)

    logger.info("payment_events_replay_finished", **summary)
    return summary


async def check_journal_backlog_async(*, stale_seconds: int | None = None) -> dict[str, int]:
    settings = get_settings()
    threshold_seconds = max(
        1,
        int(stale_seconds if stale_seconds is not None else settings.journal_replay_stale_seconds)
        * BACKLOG_ALERT_MULTIPLIER,
    )
    async with SessionLocal.begin() as session:
        stuck_count = await ProviderEventsRepo.count_unprocessed_older_than_seconds(
            session,
            older_than_seconds=threshold_seconds,
        )
        oldest_age_seconds = await ProviderEventsRepo.get_unprocessed_age_max_seconds(session)

    result = {
        "stuck_count": stuck_count,
        "oldest_age_seconds": oldest_age_seconds,
        "threshold_seconds": threshold_seconds,
    }
    if stuck_count > 0:
        await send_ops_alert(event="billing_journal_backlog_detected", payload=result)
        logger.warning("billing_journal_backlog_detected", **result)
    else:
        logger.info("billing_journal_backlog_checked", **result)
    return result


@celery_app.task(name="app.workers.tasks.payment_events.replay_unprocessed_events")
def replay_unprocessed_events(batch_size: int = 200) -> dict[str, int]:
    return run_async_job(
        replay_unprocessed_events_async(batch_size=batch_size),
        job="replay_unprocessed_events",
    )


@celery_app.task(name="app.workers.tasks.payment_events.check_journal_backlog")
def check_journal_backlog() -> dict[str, int]:
    return run_async_job(check_journal_backlog_async(), job="check_journal_backlog")


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "replay-unprocessed-payment-events-every-minute": {
            "task": "app.workers.tasks.payment_events.replay_unprocessed_events",
            "schedule": 60.0,
            "options": {"queue": "q_high"},
        },
        "check-journal-backlog-every-10-minutes": {
            "task": "app.workers.tasks.payment_events.check_journal_backlog",
            "schedule": 600.0,
            "options": {"queue": "q_normal"},
        },
    }
)
