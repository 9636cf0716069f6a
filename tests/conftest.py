"""Pytest configuration and fixtures for storefront tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront.datastore.models import Base
from storefront.settings import Settings


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings isolated from the process environment."""
    return Settings(
        cache_max=4,
        cache_default_ttl_seconds=60,
        connector_base_url="https://erp.example.com/",
        connector_prefix="/connector/api",
        connector_token_path="/oauth/token",
        connector_client_id="client",
        connector_client_secret="secret",
        connector_username="shop",
        connector_password="pw",
        connector_scope="*",
    )


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine without any tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Session factory over a database that has the invalidation table."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def bare_session_factory(engine):
    """Session factory over a database missing the invalidation table."""
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
