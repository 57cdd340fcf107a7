# tests/conftest.py
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import itertools
import os
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
import httpx
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ASYNC_DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("QR_SIGNING_KEY", "test-qr-signing-key-0123456789")
os.environ.setdefault("NOTIFICATION_COALESCE_WINDOW_MS", "0")
os.environ.setdefault("NOTIFICATION_RELAY_ENABLED", "false")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("LEDGER_BACKOFF_BASE_SECONDS", "0.005")
os.environ.setdefault("LEDGER_BACKOFF_MAX_SECONDS", "0.05")

from loyalty_core.main import app
from loyalty_core.core import replay_cache
from loyalty_core.db.session import Base
from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.domain.enums import NotificationEventType
from loyalty_core.models.program import LoyaltyProgram
from loyalty_core.schemas.notification import NotificationEventRead
from loyalty_core.services import providers

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

sync_engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})


# ---------- Fixtures ----------
@pytest.fixture(scope="session", autouse=True)
def setup_database():
    """Create the SQLite schema once per test session."""
    Base.metadata.create_all(bind=sync_engine)
    yield
    Base.metadata.drop_all(bind=sync_engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with sync_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(autouse=True)
def fresh_services(monkeypatch):
    """Service singletons hold asyncio primitives; each test gets its own."""
    providers.reset()
    monkeypatch.setattr(replay_cache, "_replay_cache", None)
    yield
    providers.reset()


@pytest_asyncio.fixture(scope="function")
async def client():
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def async_db_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def registry():
    return providers.get_card_registry()


@pytest.fixture
def dispatcher():
    return providers.get_dispatcher()


@pytest.fixture
def ledger():
    return providers.get_ledger()


@pytest.fixture
def workflow():
    return providers.get_workflow()


@pytest_asyncio.fixture(scope="function")
async def program() -> LoyaltyProgram:
    async with AsyncSessionLocal() as session:
        created = LoyaltyProgram(
            business_id=f"biz-{uuid.uuid4().hex[:8]}",
            name="Coffee Club",
            accrual_policy={"points_per_visit": 10},
            active=True,
        )
        session.add(created)
        await session.commit()
        return created


@pytest.fixture
def customer_id() -> str:
    return f"cust-{uuid.uuid4().hex[:10]}"


@pytest_asyncio.fixture(scope="function")
async def active_card(workflow, registry, program, customer_id):
    """A customer enrolled and approved, holding a zero-balance card."""
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)
    await workflow.respond(request.id, True)
    return await registry.card_for_enrollment(enrollment.id)


@pytest.fixture
def make_balance_event():
    """Factory for in-memory BALANCE_CHANGED events with increasing sequences."""
    sequence = itertools.count(1)

    def _make(card: str, version: int, target: str = "cust-1") -> NotificationEventRead:
        return NotificationEventRead(
            sequence=next(sequence),
            id=uuid.uuid4(),
            type=NotificationEventType.BALANCE_CHANGED,
            target_id=target,
            payload={"card_id": card, "balance": version * 10, "version": version},
            dedupe_key=f"balance:{card}:{version}",
            coalesce_key=f"card:{card}",
            created_at=datetime.now(timezone.utc),
        )

    return _make
