from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from .base import Base


class GenerationEvent(Base):
    """Append-only audit trail of a job's processing steps."""

    __tablename__ = "generation_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    job_id = Column(String(32), ForeignKey("image_jobs.id"), nullable=False, index=True)
    step = Column(String, nullable=False)
    detail = Column(JSONB().with_variant(JSON, "sqlite"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


__all__ = ["GenerationEvent"]
