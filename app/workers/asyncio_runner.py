from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from app.db.session import dispose_engine

T = TypeVar("T")

logger = structlog.get_logger(__name__)


async def _run_with_fresh_db_pool(awaitable: Awaitable[T], *, job: str) -> T:
    # Each Celery invocation gets its own event loop; pooled asyncpg connections
    # from a previous loop cannot be reused.
    await dispose_engine()
    started = time.monotonic()
    with structlog.contextvars.bound_contextvars(worker_job=job):
        try:
            result = await awaitable
        except Exception:
            logger.exception("worker_job_failed")
            raise
        finally:
            await dispose_engine()
        logger.info(
            "worker_job_finished",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    return result


def run_async_job(awaitable: Awaitable[T], *, job: str = "unnamed") -> T:
    """Run one worker coroutine to completion with its log lines tagged ``worker_job``."""
    return asyncio.run(_run_with_fresh_db_pool(awaitable, job=job))
