from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    public_base_url: str = Field("http://localhost:8000", alias="PUBLIC_BASE_URL")

    database_url: str = Field("sqlite:////tmp/touchfeets_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    # Rate limiting is disabled when no Redis URL is configured
    redis_url: str | None = Field(None, alias="REDIS_URL")
    rate_limit_fail_open: bool = Field(True, alias="RATE_LIMIT_FAIL_OPEN")
    generate_rate_limit: int = Field(10, alias="GENERATE_RATE_LIMIT")
    generate_rate_window_s: int = Field(60, alias="GENERATE_RATE_WINDOW_S")
    webhook_lock_ttl_s: int = Field(24 * 60 * 60, alias="WEBHOOK_LOCK_TTL_S")

    s3_bucket: str | None = Field(None, alias="S3_BUCKET")
    s3_endpoint: str | None = Field(None, alias="S3_ENDPOINT")
    s3_region: str = Field("us-east-1", alias="S3_REGION")
    s3_access_key: str | None = Field(None, alias="S3_ACCESS_KEY")
    s3_secret_key: str | None = Field(None, alias="S3_SECRET_KEY")
    s3_public_url: str | None = Field(None, alias="S3_PUBLIC_URL")
    upload_max_bytes: int = Field(20 * 1024 * 1024, alias="UPLOAD_MAX_BYTES")

    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    image_model: str = Field("gpt-image-1", alias="IMAGE_MODEL")
    image_max_edge: int = Field(1024, ge=256, le=2048, alias="IMAGE_MAX_EDGE")
    image_timeout_s: float = Field(120.0, alias="IMAGE_TIMEOUT_S")
    input_fetch_timeout_s: float = Field(30.0, alias="INPUT_FETCH_TIMEOUT_S")

    free_monthly_limit: int = Field(5, alias="FREE_MONTHLY_LIMIT")
    watermark_text: str = Field("touchfeets.com", alias="WATERMARK_TEXT")

    stripe_secret_key: str | None = Field(None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(None, alias="STRIPE_WEBHOOK_SECRET")
    price_id_basic_50: str | None = Field(None, alias="PRICE_ID_BASIC_50")
    price_id_plus_200: str | None = Field(None, alias="PRICE_ID_PLUS_200")
    price_id_pro_1000: str | None = Field(None, alias="PRICE_ID_PRO_1000")

    google_client_id: str | None = Field(None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: str | None = Field(None, alias="GOOGLE_CLIENT_SECRET")
    session_secret: str = Field("test-session-secret", alias="SESSION_SECRET")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"
