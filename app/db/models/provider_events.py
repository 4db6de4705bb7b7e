from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class RawProviderEvent(Base):
    """Journal entry: one row per (provider, provider_event_id), never deleted."""

    __tablename__ = "provider_events"
    __table_args__ = (
        CheckConstraint("provider IN ('paypal','paymongo')", name="ck_provider_events_provider"),
        CheckConstraint("origin IN ('webhook','reconciliation')", name="ck_provider_events_origin"),
        CheckConstraint("delivery_attempts >= 1", name="ck_provider_events_attempts_positive"),
        UniqueConstraint(
            "provider",
            "provider_event_id",
            name="uq_provider_events_provider_event_id",
        ),
        Index("idx_provider_events_received", "received_at"),
        Index(
            "idx_provider_events_unprocessed",
            "received_at",
            postgresql_where=text("processed_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(96), nullable=False)
    payload: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    origin: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'webhook'"),
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    delivery_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("1"),
    )
