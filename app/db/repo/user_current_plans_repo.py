from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.user_current_plans import UserCurrentPlan


class UserCurrentPlansRepo:
    @staticmethod
    async def get(session: AsyncSession, user_id: UUID) -> UserCurrentPlan | None:
        return await session.get(UserCurrentPlan, user_id)

    @staticmethod
    async def lock_for_refresh(
        session: AsyncSession,
        *,
        user_id: UUID,
        now_utc: datetime,
    ) -> None:
        """Serialize pointer refreshes per user by locking (and if needed seeding) the row."""
        seed = (
            postgresql_insert(UserCurrentPlan)
            .values(user_id=user_id, plan_key="free", computed_at=now_utc, valid_until=now_utc)
            .on_conflict_do_nothing(index_elements=[UserCurrentPlan.user_id])
        )
        await session.execute(seed)
        stmt = (
            select(UserCurrentPlan.user_id)
            .where(UserCurrentPlan.user_id == user_id)
            .with_for_update()
        )
        await session.execute(stmt)

    @staticmethod
    async def upsert(
        session: AsyncSession,
        *,
        user_id: UUID,
        plan_key: str,
        entitlement_id: UUID | None,
        computed_at: datetime,
        valid_until: datetime | None,
    ) -> None:
        stmt = postgresql_insert(UserCurrentPlan).values(
            user_id=user_id,
            plan_key=plan_key,
            entitlement_id=entitlement_id,
            computed_at=computed_at,
            valid_until=valid_until,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserCurrentPlan.user_id],
            set_={
                "plan_key": stmt.excluded.plan_key,
                "entitlement_id": stmt.excluded.entitlement_id,
                "computed_at": stmt.excluded.computed_at,
                "valid_until": stmt.excluded.valid_until,
            },
        )
        await session.execute(stmt)
