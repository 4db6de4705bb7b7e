from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.ledger_entries import LedgerEntry


class LedgerRepo:
    @staticmethod
    async def get_by_idempotency_key(
        session: AsyncSession, idempotency_key: str
    ) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def has_entries_with_key_prefix(session: AsyncSession, key_prefix: str) -> bool:
        stmt = (
            select(LedgerEntry.id)
            .where(LedgerEntry.idempotency_key.startswith(key_prefix, autoescape=True))
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def create(session: AsyncSession, *, entry: LedgerEntry) -> LedgerEntry:
        session.add(entry)
        await session.flush()
        return entry

    @staticmethod
    async def list_for_entitlement(
        session: AsyncSession,
        *,
        entitlement_id: UUID,
    ) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.entitlement_id == entitlement_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_by_entitlement(
        session: AsyncSession,
        *,
        entitlement_ids: list[UUID],
    ) -> dict[UUID, int]:
        if not entitlement_ids:
            return {}
        stmt = (
            select(LedgerEntry.entitlement_id, func.count(LedgerEntry.id))
            .where(LedgerEntry.entitlement_id.in_(entitlement_ids))
            .group_by(LedgerEntry.entitlement_id)
        )
        result = await session.execute(stmt)
        return {entitlement_id: int(count) for entitlement_id, count in result.all()}
