import enum


class ErrorCode(str, enum.Enum):
    """Codes returned in the ``detail`` of HTTP error responses."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    NOT_READY = "NOT_READY"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    STORAGE_NOT_CONFIGURED = "STORAGE_NOT_CONFIGURED"
    STORAGE_ERROR = "STORAGE_ERROR"
    BILLING_NOT_CONFIGURED = "BILLING_NOT_CONFIGURED"
    BILLING_ERROR = "BILLING_ERROR"
    AUTH_NOT_CONFIGURED = "AUTH_NOT_CONFIGURED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
