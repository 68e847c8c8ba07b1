from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from app.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Engine and session factory owned by the running application."""

    def __init__(self, cfg: Settings) -> None:
        self.engine: Engine = _create_engine(cfg.database_url)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
        if cfg.db_create_all:
            Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._session_factory()

    def dispose(self) -> None:
        self.engine.dispose()


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # SQLite ignores pool sizing; sessions are used from worker threads
        return create_engine(
            url, future=True, connect_args={"check_same_thread": False}
        )
    return create_engine(
        url,
        future=True,
        pool_size=20,
        max_overflow=0,
        pool_recycle=300,
        pool_pre_ping=True,
    )
