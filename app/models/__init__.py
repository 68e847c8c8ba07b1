from .base import Base
from .error_code import ErrorCode
from .user import User
from .image_job import BlockedReason, ImageJob, JobStatus, Style
from .generation_event import GenerationEvent
from .quota import Quota
from .subscription import PlanTier, Subscription
from .webhook_event import WebhookEvent
from .audit_log import AuditLog

__all__ = [
    "Base",
    "ErrorCode",
    "User",
    "ImageJob",
    "JobStatus",
    "BlockedReason",
    "Style",
    "GenerationEvent",
    "Quota",
    "PlanTier",
    "Subscription",
    "WebhookEvent",
    "AuditLog",
]
