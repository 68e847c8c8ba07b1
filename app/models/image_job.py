import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String

from app.models.base import Base


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BlockedReason(str, enum.Enum):
    """Coarse cause tag stored on BLOCKED and FAILED jobs."""

    SAFETY = "SAFETY"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    MODEL_ERROR = "MODEL_ERROR"
    UPLOAD_NOT_CONFIGURED = "UPLOAD_NOT_CONFIGURED"
    INPUT_OR_UNKNOWN_ERROR = "INPUT_OR_UNKNOWN_ERROR"


class Style(str, enum.Enum):
    BYZANTINE = "BYZANTINE"
    GOTHIC = "GOTHIC"
    CYBERPUNK = "CYBERPUNK"


class ImageJob(Base):
    __tablename__ = "image_jobs"

    id = Column(String(32), primary_key=True, default=lambda: uuid4().hex)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    input_url = Column(String, nullable=False)
    style = Column(Enum(Style, name="job_style"), nullable=False)
    prompt_variant = Column(String(200))
    output_format = Column(String(8), nullable=False, default="png")
    status = Column(
        Enum(JobStatus, name="job_status"),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    output_url = Column(String)
    output_key = Column(String)
    blocked_reason = Column(String)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at = Column(DateTime(timezone=True))


__all__ = ["ImageJob", "JobStatus", "BlockedReason", "Style"]
