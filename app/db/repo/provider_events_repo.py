from __future__ import annotations

from datetime import datetime

from sqlalchemy import Float, func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.provider_events import RawProviderEvent


class ProviderEventsRepo:
    @staticmethod
    async def try_insert_first_delivery(
        session: AsyncSession,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        payload: dict[str, object],
        received_at: datetime,
        origin: str,
    ) -> int | None:
        stmt = (
            postgresql_insert(RawProviderEvent)
            .values(
                provider=provider,
                provider_event_id=provider_event_id,
                event_type=event_type,
                payload=payload,
                origin=origin,
                received_at=received_at,
                duplicate=False,
                delivery_attempts=1,
            )
            .on_conflict_do_nothing(
                index_elements=[RawProviderEvent.provider, RawProviderEvent.provider_event_id]
            )
            .returning(RawProviderEvent.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_redelivery(
        session: AsyncSession,
        *,
        provider: str,
        provider_event_id: str,
    ) -> tuple[int, int] | None:
        stmt = (
            update(RawProviderEvent)
            .where(
                RawProviderEvent.provider == provider,
                RawProviderEvent.provider_event_id == provider_event_id,
            )
            .values(
                duplicate=True,
                delivery_attempts=RawProviderEvent.delivery_attempts + 1,
            )
            .returning(RawProviderEvent.id, RawProviderEvent.delivery_attempts)
        )
        result = await session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    @staticmethod
    async def get_by_id(session: AsyncSession, journal_entry_id: int) -> RawProviderEvent | None:
        return await session.get(RawProviderEvent, journal_entry_id)

    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        journal_entry_id: int,
    ) -> RawProviderEvent | None:
        stmt = (
            select(RawProviderEvent)
            .where(RawProviderEvent.id == journal_entry_id)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_provider_event_id(
        session: AsyncSession,
        *,
        provider: str,
        provider_event_id: str,
    ) -> RawProviderEvent | None:
        stmt = select(RawProviderEvent).where(
            RawProviderEvent.provider == provider,
            RawProviderEvent.provider_event_id == provider_event_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_processed(
        session: AsyncSession,
        *,
        journal_entry_id: int,
        processed_at: datetime,
    ) -> bool:
        stmt = (
            update(RawProviderEvent)
            .where(
                RawProviderEvent.id == journal_entry_id,
                RawProviderEvent.processed_at.is_(None),
            )
            .values(processed_at=processed_at)
            .returning(RawProviderEvent.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def list_unprocessed_ids(
        session: AsyncSession,
        *,
        received_before: datetime,
        limit: int,
    ) -> list[int]:
        stmt = (
            select(RawProviderEvent.id)
            .where(
                RawProviderEvent.processed_at.is_(None),
                RawProviderEvent.received_at <= received_before,
            )
            .order_by(RawProviderEvent.received_at.asc(), RawProviderEvent.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return [int(value) for value in result.scalars().all()]

    @staticmethod
    async def count_unprocessed_older_than_seconds(
        session: AsyncSession,
        *,
        older_than_seconds: int,
    ) -> int:
        age_seconds = func.extract("epoch", func.now() - RawProviderEvent.received_at)
        stmt = select(func.count(RawProviderEvent.id)).where(
            RawProviderEvent.processed_at.is_(None),
            age_seconds >= max(1, int(older_than_seconds)),
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def get_unprocessed_age_max_seconds(session: AsyncSession) -> int:
        age_seconds = func.extract("epoch", func.now() - RawProviderEvent.received_at)
        stmt = select(func.max(age_seconds.cast(Float))).where(
            RawProviderEvent.processed_at.is_(None),
        )
        result = await session.execute(stmt)
        raw_age = result.scalar_one_or_none()
        if raw_age is None:
            return 0
        return max(0, int(raw_age))

    @staticmethod
    async def list_for_window(
        session: AsyncSession,
        *,
        provider: str,
        received_from: datetime,
        received_to: datetime,
    ) -> list[RawProviderEvent]:
        stmt = (
            select(RawProviderEvent)
            .where(
                RawProviderEvent.provider == provider,
                RawProviderEvent.received_at >= received_from,
                RawProviderEvent.received_at < received_to,
            )
            .order_by(RawProviderEvent.received_at.asc(), RawProviderEvent.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_by_provider_event_ids(
        session: AsyncSession,
        *,
        provider: str,
        provider_event_ids: list[str],
    ) -> list[RawProviderEvent]:
        if not provider_event_ids:
            return []
        stmt = select(RawProviderEvent).where(
            RawProviderEvent.provider == provider,
            RawProviderEvent.provider_event_id.in_(provider_event_ids),
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
