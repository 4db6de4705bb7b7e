from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.reconciliation_jobs import ReconciliationJob


class ReconciliationJobsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, job: ReconciliationJob) -> ReconciliationJob:
        session.add(job)
        await session.flush()
        return job

    @staticmethod
    async def get_by_id(session: AsyncSession, job_id: UUID) -> ReconciliationJob | None:
        return await session.get(ReconciliationJob, job_id)

    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        job_id: UUID,
    ) -> ReconciliationJob | None:
        stmt = select(ReconciliationJob).where(ReconciliationJob.id == job_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def find_for_window(
        session: AsyncSession,
        *,
        job_type: str,
        provider: str | None,
        date_from: date,
        date_to: date,
    ) -> ReconciliationJob | None:
        stmt = (
            select(ReconciliationJob)
            .where(
                ReconciliationJob.job_type == job_type,
                ReconciliationJob.date_from == date_from,
                ReconciliationJob.date_to == date_to,
            )
            .order_by(ReconciliationJob.created_at.desc())
            .limit(1)
        )
        if provider is None:
            stmt = stmt.where(ReconciliationJob.provider.is_(None))
        else:
            stmt = stmt.where(ReconciliationJob.provider == provider)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def try_mark_running(
        session: AsyncSession,
        *,
        job_id: UUID,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(ReconciliationJob)
            .where(
                ReconciliationJob.id == job_id,
                ReconciliationJob.status == "queued",
            )
            .values(status="running", updated_at=now_utc)
            .returning(ReconciliationJob.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def try_cancel(
        session: AsyncSession,
        *,
        job_id: UUID,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(ReconciliationJob)
            .where(
                ReconciliationJob.id == job_id,
                ReconciliationJob.status.in_(("queued", "running")),
            )
            .values(status="cancelled", updated_at=now_utc)
            .returning(ReconciliationJob.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def get_status(session: AsyncSession, job_id: UUID) -> str | None:
        stmt = select(ReconciliationJob.status).where(ReconciliationJob.id == job_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_due_ids(
        session: AsyncSession,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[UUID]:
        stmt = (
            select(ReconciliationJob.id)
            .where(
                ReconciliationJob.status == "queued",
                or_(
                    ReconciliationJob.scheduled_for.is_(None),
                    ReconciliationJob.scheduled_for <= now_utc,
                ),
            )
            .order_by(ReconciliationJob.created_at.asc(), ReconciliationJob.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
