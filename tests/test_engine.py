"""Tests for the database engine helpers."""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from storefront.datastore import engine as db_engine
from storefront.datastore.repositories import CacheInvalidationRepository
from storefront.settings import Settings


class DriverError(Exception):
    pass


@pytest_asyncio.fixture
async def database(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/storefront.db")
    await db_engine.init_db(settings, create_schema=True)
    yield settings
    await db_engine.close_db()


def test_session_factory_requires_init():
    with pytest.raises(RuntimeError):
        db_engine.get_session_factory()


def test_build_engine_pool_settings():
    settings = Settings(
        database_url="mysql+aiomysql://shop:pw@db/shop", database_pool_size=7
    )
    with patch.object(db_engine, "create_async_engine") as create:
        db_engine.build_engine(settings)

    kwargs = create.call_args.kwargs
    assert kwargs["pool_size"] == 7
    assert kwargs["max_overflow"] == 0
    assert kwargs["connect_args"] == {"connect_timeout": 10}


@pytest.mark.asyncio
async def test_run_with_retry_commits(database):
    async def write(session):
        await CacheInvalidationRepository(session).enqueue("products:v1:a")

    await db_engine.run_with_retry(write)

    async def read(session):
        return await CacheInvalidationRepository(session).fetch_pending()

    pending = await db_engine.run_with_retry(read)
    assert [p.cache_key for p in pending] == ["products:v1:a"]


@pytest.mark.asyncio
async def test_run_with_retry_retries_transient_failures(database):
    lost = OperationalError("SELECT 1", {}, DriverError(2013, "Lost connection"))
    fn = AsyncMock(side_effect=[lost, "ok"])

    assert await db_engine.run_with_retry(fn, retries=1) == "ok"
    assert fn.await_count == 2
