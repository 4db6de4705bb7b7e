from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class BillingIdentity(Base):
    __tablename__ = "billing_identities"
    __table_args__ = (
        CheckConstraint("provider IN ('paypal','paymongo')", name="ck_billing_identities_provider"),
        UniqueConstraint(
            "provider",
            "external_customer_ref",
            name="uq_billing_identities_provider_customer_ref",
        ),
        Index("idx_billing_identities_user_provider", "user_id", "provider"),
        Index(
            "uq_billing_identities_current_per_user_provider",
            "user_id",
            "provider",
            unique=True,
            postgresql_where=text("superseded_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    external_customer_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
