from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from uuid import UUID

import structlog

from app.billing.grants import GrantService
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.session import SessionLocal
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


async def _sweep(
    *,
    list_ids: Callable[..., Awaitable[list[UUID]]],
    apply: Callable[..., Awaitable[object]],
    log_prefix: str,
    batch_size: int,
) -> dict[str, int]:
    now_utc = datetime.now(timezone.utc)
    async with SessionLocal.begin() as session:
        entitlement_ids = await list_ids(session, now_utc=now_utc, limit=batch_size)

    summary = {"examined": len(entitlement_ids), "changed": 0, "skipped": 0, "errors": 0}
    for entitlement_id in entitlement_ids:
        try:
            async with SessionLocal.begin() as session:
                outcome = await apply(session, entitlement_id=entitlement_id, now_utc=now_utc)
        except Exception:
            summary["errors"] += 1
            logger.exception(f"{log_prefix}_error", entitlement_id=str(entitlement_id))
            continue
        if outcome.mutated:
            summary["changed"] += 1
        else:
            summary["skipped"] += 1

    logger.info(f"{log_prefix}_finished", **summary)
    return summary


async def expire_ended_entitlements_async(*, batch_size: int = 500) -> dict[str, int]:
    return await _sweep(
        list_ids=EntitlementsRepo.list_live_ended_ids,
        apply=GrantService.expire_entitlement,
        log_prefix="entitlement_expiry_sweep",
        batch_size=batch_size,
    )


async def activate_scheduled_entitlements_async(*, batch_size: int = 500) -> dict[str, int]:
    return await _sweep(
        list_ids=EntitlementsRepo.list_scheduled_due_ids,
        apply=GrantService.activate_scheduled_entitlement,
        log_prefix="entitlement_activation_sweep",
        batch_size=batch_size,
    )


@celery_app.task(name="app.workers.tasks.entitlements.expire_ended_entitlements")
def expire_ended_entitlements(batch_size: int = 500) -> dict[str, int]:
    return run_async_job(
        expire_ended_entitlements_async(batch_size=batch_size),
        job="expire_ended_entitlements",
    )


@celery_app.task(name="app.workers.tasks.entitlements.activate_scheduled_entitlements")
def activate_scheduled_entitlements(batch_size: int = 500) -> dict[str, int]:
    return run_async_job(
        activate_scheduled_entitlements_async(batch_size=batch_size),
        job="activate_scheduled_entitlements",
    )


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "expire-ended-entitlements-every-5-minutes": {
            "task": "app.workers.tasks.entitlements.expire_ended_entitlements",
            "schedule": 300.0,
            "options": {"queue": "q_normal"},
        },
        "activate-scheduled-entitlements-every-5-minutes": {
            "task": "app.workers.tasks.entitlements.activate_scheduled_entitlements",
            "schedule": 300.0,
            "options": {"queue": "q_normal"},
        },
    }
)
