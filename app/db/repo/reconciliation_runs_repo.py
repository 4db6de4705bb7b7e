from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.reconciliation_runs import ReconciliationRun


class ReconciliationRunsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, run: ReconciliationRun) -> ReconciliationRun:
        session.add(run)
        await session.flush()
        return run

    @staticmethod
    async def get_by_id(session: AsyncSession, run_id: UUID) -> ReconciliationRun | None:
        return await session.get(ReconciliationRun, run_id)

    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        run_id: UUID,
    ) -> ReconciliationRun | None:
        stmt = select(ReconciliationRun).where(ReconciliationRun.id == run_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_job(session: AsyncSession, job_id: UUID) -> list[ReconciliationRun]:
        stmt = (
            select(ReconciliationRun)
            .where(ReconciliationRun.job_id == job_id)
            .order_by(ReconciliationRun.started_at.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def finish(
        session: AsyncSession,
        *,
        run: ReconciliationRun,
        status: str,
        finished_at: datetime,
        stats: dict[str, object],
        error: str | None = None,
    ) -> ReconciliationRun:
        run.status = status
        run.finished_at = finished_at
        run.stats = stats
        run.error = error
        await session.flush()
        return run
