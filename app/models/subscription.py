import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from app.models.base import Base


class PlanTier(str, enum.Enum):
    FREE = "FREE"
    BASIC_50 = "BASIC_50"
    PLUS_200 = "PLUS_200"
    PRO_1000 = "PRO_1000"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    stripe_customer_id = Column(String, index=True)
    stripe_subscription_id = Column(String, unique=True)
    stripe_price_id = Column(String)
    plan_tier = Column(String, nullable=False, default=PlanTier.FREE.value)
    status = Column(String, nullable=False)
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["PlanTier", "Subscription"]
