"""Process-wide service objects, built once in the application lifespan."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx
from authlib.integrations.starlette_client import OAuth

from app.config import Settings
from app.db import Database

from .billing import StripeBilling
from .entitlements import QuotaLedger
from .generator import ImageGenerator
from .rate_limit import RateLimiter
from .storage import BlobStorage

logger = logging.getLogger(__name__)

GOOGLE_METADATA_URL = "https://accounts.google.com/.well-known/openid-configuration"


@dataclass
class Services:
    settings: Settings
    db: Database
    storage: BlobStorage
    rate_limiter: RateLimiter
    ledger: QuotaLedger
    generator: ImageGenerator
    billing: StripeBilling
    http: httpx.AsyncClient
    oauth: OAuth

    async def close(self) -> None:
        await self.storage.close()
        await self.rate_limiter.close()
        await self.http.aclose()
        await asyncio.to_thread(self.generator.close)
        await asyncio.to_thread(self.db.dispose)


def build_oauth(cfg: Settings) -> OAuth:
    oauth = OAuth()
    if cfg.google_client_id and cfg.google_client_secret:
        oauth.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url=GOOGLE_METADATA_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth registered")
    return oauth


def build_services(cfg: Settings) -> Services:
    db = Database(cfg)
    services = Services(
        settings=cfg,
        db=db,
        storage=BlobStorage(cfg),
        rate_limiter=RateLimiter.from_url(cfg.redis_url, fail_open=cfg.rate_limit_fail_open),
        ledger=QuotaLedger(db, cfg),
        generator=ImageGenerator(
            cfg.openai_api_key, cfg.image_model, timeout=cfg.image_timeout_s
        ),
        billing=StripeBilling(cfg),
        http=httpx.AsyncClient(timeout=cfg.input_fetch_timeout_s),
        oauth=build_oauth(cfg),
    )
    if not services.storage.configured:
        logger.warning("S3_BUCKET not set; uploads and outputs are disabled")
    return services


__all__ = ["Services", "build_oauth", "build_services"]
