from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.sessions import SessionMiddleware

from app.config import Settings
from app.controllers import api
from app.logger import setup_logging
from app.middleware.request_id import RequestIdMiddleware
from app.services.container import build_services

settings = Settings()
setup_logging(settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Clients are built once per process and shared by all requests
    services = build_services(settings)
    app.state.services = services
    logger.info("services ready (env=%s)", settings.app_env)
    yield
    await services.close()


app = FastAPI(
    title="touchfeets API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="touchfeets_session",
    max_age=30 * 24 * 60 * 60,
    same_site="lax",
    https_only=settings.is_production,
)
app.add_middleware(RequestIdMiddleware)

app.include_router(api.router)

Instrumentator().instrument(app).expose(app)
