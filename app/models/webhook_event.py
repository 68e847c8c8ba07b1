from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from app.models.base import Base


class WebhookEvent(Base):
    """One row per billing provider event id; the unique key deduplicates replays."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    stripe_event_id = Column(String, nullable=False, unique=True)
    type = Column(String, nullable=False)
    payload = Column(JSONB().with_variant(JSON, "sqlite"))
    status = Column(String, nullable=False, default="received")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    processed_at = Column(DateTime(timezone=True))


__all__ = ["WebhookEvent"]
