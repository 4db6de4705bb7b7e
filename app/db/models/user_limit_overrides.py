from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, String, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class UserLimitOverride(Base):
    __tablename__ = "user_limit_overrides"
    __table_args__ = (
        CheckConstraint(
            "value_num IS NOT NULL OR value_bool IS NOT NULL",
            name="ck_user_limit_overrides_has_value",
        ),
    )

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    limit_key: Mapped[str] = mapped_column(String(32), primary_key=True)
    value_num: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    value_bool: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
