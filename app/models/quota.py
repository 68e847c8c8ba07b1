from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from app.models.base import Base


class Quota(Base):
    """Per-user generation allowance for one UTC month."""

    __tablename__ = "quotas"
    __table_args__ = (
        UniqueConstraint("user_id", "month_utc", name="uq_quotas_user_month"),
        CheckConstraint("free_remaining >= 0", name="ck_quotas_free_nonneg"),
        CheckConstraint("paid_remaining >= 0", name="ck_quotas_paid_nonneg"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    month_utc = Column(String(7), nullable=False)  # e.g. "2026-10"
    free_remaining = Column(Integer, nullable=False, server_default="0")
    paid_remaining = Column(Integer, nullable=False, server_default="0")
    watermark_exempt = Column(Boolean, nullable=False, server_default="0")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["Quota"]
