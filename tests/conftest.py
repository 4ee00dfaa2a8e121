"""
Pytest fixtures for PairGate tests.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure test config is set before importing pairgate modules.
os.environ.setdefault("PAIRGATE_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("PAIRGATE_ENV", "development")
os.environ.setdefault("PAIRGATE_STORE_BACKEND", "memory")
os.environ.setdefault("PAIRGATE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAIRGATE_SESSION_SWEEP_ENABLED", "false")

from pairgate.config import Settings
from pairgate.db.base import create_engine, init_db
from pairgate.engine import PairGateEngine
from pairgate.store.memory import MemoryDocumentStore
from pairgate.store.sql import SqlDocumentStore

pytest_plugins = ("pytest_asyncio",)

SUBJECT = "subject-alice"
CONTROLLER = "controller-bob"
OTHER_CONTROLLER = "controller-carol"
STRANGER = "stranger-dave"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def make_settings(**overrides) -> Settings:
    values = {
        "env": "development",
        "allow_insecure_dev": True,
        "store_backend": "memory",
        "database_url": "sqlite+aiosqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return make_settings()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def engine(store, config, clock):
    """Engine over the in-memory store with a frozen clock."""
    return PairGateEngine(store, config, clock)


@pytest.fixture
async def relationship(engine):
    """An active relationship between SUBJECT and CONTROLLER with default policy."""
    issued = (await engine.generate_code(SUBJECT)).unwrap()
    return (await engine.redeem_code(issued.code, CONTROLLER)).unwrap()


@pytest.fixture
async def admin_session(engine, relationship):
    """An active admin session on the default relationship."""
    return (await engine.start_session(relationship.id, CONTROLLER)).unwrap()


@pytest.fixture
async def sql_store(tmp_path):
    """SQL document store on a throwaway SQLite file."""
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pairgate.db'}")
    await init_db(db_engine)
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlDocumentStore(factory)
    await db_engine.dispose()


@pytest.fixture
async def client(engine):
    """Async test client with overridden dependencies."""
    from pairgate.api.deps import get_engine, verify_api_key
    from pairgate.main import app
    from pairgate.middleware.rate_limit import rate_limit_dependency

    async def override_verify_api_key():
        return "insecure_dev"

    async def override_rate_limit():
        return None

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[verify_api_key] = override_verify_api_key
    app.dependency_overrides[rate_limit_dependency] = override_rate_limit

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
