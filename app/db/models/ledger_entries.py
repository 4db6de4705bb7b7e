from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class LedgerEntry(Base):
    """Append-only audit row, one per entitlement mutation."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint(
            "action IN ('grant','extend','revoke','expire','update')",
            name="ck_ledger_entries_action",
        ),
        CheckConstraint(
            "actor IN ('provider','admin','reconciliation','system')",
            name="ck_ledger_entries_actor",
        ),
        Index("idx_ledger_user_created", "user_id", "created_at"),
        Index("idx_ledger_entitlement", "entitlement_id"),
        Index("idx_ledger_event", "event_provider", "event_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    entitlement_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("entitlements.id"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    actor: Mapped[str] = mapped_column(String(16), nullable=False)
    before_state: Mapped[dict[str, object] | None] = mapped_column(JSONB, nullable=True)
    after_state: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    event_provider: Mapped[str | None] = mapped_column(String(16), nullable=True)
    event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    journal_entry_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("provider_events.id"),
        nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    metadata_: Mapped[dict[str, object]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
