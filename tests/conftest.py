import os
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path

import httpx
import pytest
from alembic import command
from alembic.config import Config
from authlib.integrations.starlette_client import OAuth
from fastapi import Header, HTTPException

# Ensure tests run against SQLite when DATABASE_URL is not defined
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/touchfeets_test.db")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("PRICE_ID_BASIC_50", "price_basic")
os.environ.setdefault("PRICE_ID_PLUS_200", "price_plus")
os.environ.setdefault("PRICE_ID_PRO_1000", "price_pro")
os.environ.pop("REDIS_URL", None)
os.environ.pop("S3_BUCKET", None)
os.environ.pop("GOOGLE_CLIENT_ID", None)

from fastapi.testclient import TestClient  # noqa: E402

from app.config import Settings  # noqa: E402
from app.db import Database  # noqa: E402
from app.dependencies import get_services, require_user  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    AuditLog,
    GenerationEvent,
    ImageJob,
    Quota,
    Subscription,
    User,
    WebhookEvent,
)
from app.services.billing import StripeBilling  # noqa: E402
from app.services.container import Services  # noqa: E402
from app.services.entitlements import QuotaLedger  # noqa: E402
from app.services.rate_limit import RateLimiter  # noqa: E402
from tests.fakes import FakeGenerator, FakeRedis, FakeStorage, input_handler  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def apply_migrations():
    """Apply Alembic migrations before running tests."""
    db_url = os.environ["DATABASE_URL"]
    if db_url.startswith("sqlite:///"):
        db_path = Path(db_url.replace("sqlite:///", ""))
        if db_path.exists():
            db_path.unlink()
    cfg_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    config = Config(str(cfg_path))
    stdout_buf, stderr_buf = StringIO(), StringIO()
    try:
        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            command.upgrade(config, "head")
    except Exception as exc:
        print("Alembic upgrade failed:", exc)
        print("stdout:\n", stdout_buf.getvalue())
        print("stderr:\n", stderr_buf.getvalue())
        raise


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    """Remove temporary SQLite database after tests finish."""
    yield
    db_url = os.environ.get("DATABASE_URL")
    if db_url and db_url.startswith("sqlite:///"):
        db_path = Path(db_url.replace("sqlite:///", ""))
        if db_path.exists():
            db_path.unlink()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def db(settings):
    database = Database(settings)
    yield database
    database.dispose()


@pytest.fixture(autouse=True)
def clean_db(apply_migrations, db):
    """Start each test from two known users and empty job/billing tables."""
    with db.session() as session:
        for model in (GenerationEvent, ImageJob, Quota, Subscription, WebhookEvent, AuditLog, User):
            session.query(model).delete()
        session.add_all(
            [
                User(id=1, email="one@example.com", name="One"),
                User(id=2, email="two@example.com", name="Two"),
            ]
        )
        session.commit()
    yield


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def services(settings, db, fake_redis):
    svc = Services(
        settings=settings,
        db=db,
        storage=FakeStorage(),
        rate_limiter=RateLimiter(fake_redis, fail_open=True),
        ledger=QuotaLedger(db, settings),
        generator=FakeGenerator(),
        billing=StripeBilling(settings),
        http=httpx.AsyncClient(transport=httpx.MockTransport(input_handler)),
        oauth=OAuth(),
    )
    yield svc


async def _header_user(x_test_user: int | None = Header(None, alias="X-Test-User")) -> int:
    if x_test_user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "UNAUTHORIZED", "message": "Authentication required"},
        )
    return x_test_user


@pytest.fixture
def client(services):
    """Yields a TestClient wired to the fake services."""
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[require_user] = _header_user
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
