from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.billing_identities import BillingIdentity


class BillingIdentitiesRepo:
    @staticmethod
    async def get_by_customer_ref(
        session: AsyncSession,
        *,
        provider: str,
        external_customer_ref: str,
    ) -> BillingIdentity | None:
        stmt = select(BillingIdentity).where(
            BillingIdentity.provider == provider,
            BillingIdentity.external_customer_ref == external_customer_ref,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_current_for_user(
        session: AsyncSession,
        *,
        user_id: UUID,
        provider: str,
        for_update: bool = False,
    ) -> BillingIdentity | None:
        stmt = select(BillingIdentity).where(
            BillingIdentity.user_id == user_id,
            BillingIdentity.provider == provider,
            BillingIdentity.superseded_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def supersede(
        session: AsyncSession,
        *,
        identity_id: int,
        superseded_at: datetime,
    ) -> None:
        stmt = (
            update(BillingIdentity)
            .where(BillingIdentity.id == identity_id, BillingIdentity.superseded_at.is_(None))
            .values(superseded_at=superseded_at)
        )
        await session.execute(stmt)

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        user_id: UUID,
        provider: str,
        external_customer_ref: str,
        created_at: datetime,
    ) -> BillingIdentity:
        identity = BillingIdentity(
            user_id=user_id,
            provider=provider,
            external_customer_ref=external_customer_ref,
            created_at=created_at,
        )
        session.add(identity)
        await session.flush()
        return identity
