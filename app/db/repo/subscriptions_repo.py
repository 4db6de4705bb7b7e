from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.subscriptions import Subscription


class SubscriptionsRepo:
    @staticmethod
    async def get_by_external_ref_for_update(
        session: AsyncSession,
        *,
        provider: str,
        external_ref: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(
                Subscription.provider == provider,
                Subscription.external_ref == external_ref,
            )
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_external_ref(
        session: AsyncSession,
        *,
        provider: str,
        external_ref: str,
    ) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.provider == provider,
            Subscription.external_ref == external_ref,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, subscription: Subscription) -> Subscription:
        session.add(subscription)
        await session.flush()
        return subscription
