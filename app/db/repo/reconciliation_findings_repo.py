from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.reconciliation_findings import ReconciliationFinding


class ReconciliationFindingsRepo:
    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        finding: ReconciliationFinding,
    ) -> ReconciliationFinding:
        session.add(finding)
        await session.flush()
        return finding

    @staticmethod
    async def get_by_id(session: AsyncSession, finding_id: UUID) -> ReconciliationFinding | None:
        return await session.get(ReconciliationFinding, finding_id)

    @staticmethod
    async def get_open_for_event(
        session: AsyncSession,
        *,
        diff_type: str,
        provider: str,
        provider_event_id: str,
    ) -> ReconciliationFinding | None:
        stmt = (
            select(ReconciliationFinding)
            .where(
                ReconciliationFinding.diff_type == diff_type,
                ReconciliationFinding.provider == provider,
                ReconciliationFinding.provider_event_id == provider_event_id,
                ReconciliationFinding.resolved.is_(False),
            )
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_open_for_entitlement(
        session: AsyncSession,
        *,
        diff_type: str,
        entitlement_id: UUID,
    ) -> ReconciliationFinding | None:
        stmt = (
            select(ReconciliationFinding)
            .where(
                ReconciliationFinding.diff_type == diff_type,
                ReconciliationFinding.entitlement_id == entitlement_id,
                ReconciliationFinding.resolved.is_(False),
            )
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_open(
        session: AsyncSession,
        *,
        provider: str | None = None,
        diff_type: str | None = None,
        job_id: UUID | None = None,
        limit: int = 100,
    ) -> list[ReconciliationFinding]:
        stmt = select(ReconciliationFinding).where(ReconciliationFinding.resolved.is_(False))
        if provider is not None:
            stmt = stmt.where(ReconciliationFinding.provider == provider)
        if diff_type is not None:
            stmt = stmt.where(ReconciliationFinding.diff_type == diff_type)
        if job_id is not None:
            stmt = stmt.where(ReconciliationFinding.job_id == job_id)
        stmt = stmt.order_by(
            ReconciliationFinding.created_at.asc(),
            ReconciliationFinding.id.asc(),
        ).limit(max(1, int(limit)))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_open_for_run(session: AsyncSession, run_id: UUID) -> int:
        stmt = select(func.count(ReconciliationFinding.id)).where(
            ReconciliationFinding.run_id == run_id,
            ReconciliationFinding.resolved.is_(False),
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def mark_resolved(
        session: AsyncSession,
        *,
        finding_id: UUID,
        resolved_by: str,
        resolution_note: str | None,
        resolved_at: datetime,
    ) -> bool:
        stmt = (
            update(ReconciliationFinding)
            .where(
                ReconciliationFinding.id == finding_id,
                ReconciliationFinding.resolved.is_(False),
            )
            .values(
                resolved=True,
                resolved_by=resolved_by,
                resolution_note=resolution_note,
                resolved_at=resolved_at,
            )
            .returning(ReconciliationFinding.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
