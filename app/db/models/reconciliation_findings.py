from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class ReconciliationFinding(Base):
    __tablename__ = "reconciliation_findings"
    __table_args__ = (
        CheckConstraint(
            "diff_type IN ('missing_internal_event','missing_provider_event','amount_mismatch',"
            "'currency_mismatch','status_mismatch','missing_entitlement','extra_entitlement',"
            "'unprocessable_event')",
            name="ck_reconciliation_findings_diff_type",
        ),
        CheckConstraint(
            "suggested_action IN ('grant','revoke','investigate')",
            name="ck_reconciliation_findings_suggested_action",
        ),
        Index(
            "idx_reconciliation_findings_open",
            "created_at",
            postgresql_where=text("NOT resolved"),
        ),
        Index("idx_reconciliation_findings_job", "job_id"),
        Index("idx_reconciliation_findings_run", "run_id"),
        Index("idx_reconciliation_findings_event", "provider", "provider_event_id"),
        Index("idx_reconciliation_findings_user", "user_id"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    job_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("reconciliation_jobs.id"),
        nullable=True,
    )
    run_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("reconciliation_runs.id"),
        nullable=True,
    )
    journal_entry_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("provider_events.id"),
        nullable=True,
    )
    diff_type: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(16), nullable=True)
    provider_event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    entitlement_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    expected_amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actual_amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expected_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    actual_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    expected_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    actual_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    details: Mapped[dict[str, object]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    suggested_action: Mapped[str] = mapped_column(String(16), nullable=False)
    auto_healable: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
