from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.entitlements import Entitlement


class EntitlementsRepo:
    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        entitlement_id: UUID,
    ) -> Entitlement | None:
        stmt = select(Entitlement).where(Entitlement.id == entitlement_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_window_key_for_update(
        session: AsyncSession,
        *,
        user_id: UUID,
        plan_key: str,
        starts_at: datetime,
    ) -> Entitlement | None:
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.user_id == user_id,
                Entitlement.plan_key == plan_key,
                Entitlement.starts_at == starts_at,
            )
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_extendable_window_for_update(
        session: AsyncSession,
        *,
        user_id: UUID,
        plan_key: str,
        source: str,
        at_utc: datetime,
    ) -> Entitlement | None:
        """Active window of the same plan and source that covers or abuts ``at_utc``."""
        stmt = (
            select(Entitlement)
            .where(
                and_(
                    Entitlement.user_id == user_id,
                    Entitlement.plan_key == plan_key,
                    Entitlement.source == source,
                    Entitlement.status == "active",
                    Entitlement.starts_at <= at_utc,
                    or_(Entitlement.ends_at.is_(None), Entitlement.ends_at >= at_utc),
                )
            )
            .order_by(Entitlement.starts_at.desc(), Entitlement.id.asc())
            .limit(1)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_live_one_off_for_update(
        session: AsyncSession,
        *,
        user_id: UUID,
        plan_key: str,
        source: str,
    ) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.user_id == user_id,
                Entitlement.plan_key == plan_key,
                Entitlement.source == source,
                Entitlement.subscription_id.is_(None),
                Entitlement.status.in_(("active", "scheduled")),
            )
            .order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
            .with_for_update()
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_subscription_for_update(
        session: AsyncSession,
        *,
        subscription_id: UUID,
    ) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(Entitlement.subscription_id == subscription_id)
            .order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
            .with_for_update()
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_funded_by_payment_for_update(
        session: AsyncSession,
        *,
        source: str,
        payment_ref: str,
    ) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.source == source,
                Entitlement.metadata_.contains({"payment_refs": [payment_ref]}),
            )
            .order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
            .with_for_update()
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_funded_by_payment(
        session: AsyncSession,
        *,
        source: str,
        payment_ref: str,
    ) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.source == source,
                Entitlement.metadata_.contains({"payment_refs": [payment_ref]}),
            )
            .order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: UUID,
        statuses: tuple[str, ...] | None = None,
    ) -> list[Entitlement]:
        stmt = select(Entitlement).where(Entitlement.user_id == user_id)
        if statuses:
            stmt = stmt.where(Entitlement.status.in_(statuses))
        stmt = stmt.order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_live_ended_ids(
        session: AsyncSession,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[UUID]:
        stmt = (
            select(Entitlement.id)
            .where(
                Entitlement.status.in_(("active", "scheduled")),
                Entitlement.ends_at.is_not(None),
                Entitlement.ends_at <= now_utc,
            )
            .order_by(Entitlement.ends_at.asc(), Entitlement.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_sources_updated_between(
        session: AsyncSession,
        *,
        sources: tuple[str, ...],
        updated_from: datetime,
        updated_to: datetime,
    ) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(
                Entitlement.source.in_(sources),
                Entitlement.updated_at >= updated_from,
                Entitlement.updated_at < updated_to,
            )
            .order_by(Entitlement.updated_at.asc(), Entitlement.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def create(session: AsyncSession, *, entitlement: Entitlement) -> Entitlement:
        session.add(entitlement)
        await session.flush()
        return entitlement

    @staticmethod
    async def list_scheduled_due_ids(
        session: AsyncSession,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[UUID]:
        stmt = (
            select(Entitlement.id)
            .where(
                Entitlement.status == "scheduled",
                Entitlement.starts_at <= now_utc,
            )
            .order_by(Entitlement.starts_at.asc(), Entitlement.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
