from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from .base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    action = Column(String, nullable=False)
    context = Column(JSONB().with_variant(JSON, "sqlite"))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
