from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.user_limit_overrides import UserLimitOverride


class UserLimitOverridesRepo:
    @staticmethod
    async def list_for_user(session: AsyncSession, user_id: UUID) -> list[UserLimitOverride]:
        stmt = (
            select(UserLimitOverride)
            .where(UserLimitOverride.user_id == user_id)
            .order_by(UserLimitOverride.limit_key.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def upsert(
        session: AsyncSession,
        *,
        user_id: UUID,
        limit_key: str,
        value_num: int | None,
        value_bool: bool | None,
        reason: str | None,
        now_utc: datetime,
    ) -> None:
        stmt = postgresql_insert(UserLimitOverride).values(
            user_id=user_id,
            limit_key=limit_key,
            value_num=value_num,
            value_bool=value_bool,
            reason=reason,
            created_at=now_utc,
            updated_at=now_utc,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserLimitOverride.user_id, UserLimitOverride.limit_key],
            set_={
                "value_num": stmt.excluded.value_num,
                "value_bool": stmt.excluded.value_bool,
                "reason": stmt.excluded.reason,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)
