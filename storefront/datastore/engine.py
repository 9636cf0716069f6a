"""
Database engine configuration and management
SQLAlchemy async engine with a bounded connection pool
"""

from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.datastore.models import Base
from storefront.services.retry import with_retry
from storefront.settings import Settings, global_settings

T = TypeVar("T")

# Global database engine instance
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database URL."""
    url = make_url(settings.database_url)
    kwargs: dict[str, Any] = {"echo": settings.database_echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"timeout": settings.database_connect_timeout}
    else:
        # Checkouts beyond pool_size wait up to pool_timeout instead of failing
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=0,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"connect_timeout": settings.database_connect_timeout},
        )

    return create_async_engine(url, **kwargs)


async def init_db(
    settings: Settings | None = None, create_schema: bool = False
) -> None:
    """Initialise the engine and session factory.

    The invalidation table is managed by migrations, so the schema is only
    created when explicitly requested (local development and tests).
    """
    global engine, AsyncSessionLocal

    settings = settings or global_settings
    engine = build_engine(settings)
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database engine ready: {engine.url.render_as_string(hide_password=True)}")


async def run_with_retry(
    fn: Callable[[AsyncSession], Awaitable[T]],
    retries: int | None = None,
) -> T:
    """Run fn in a fresh committed session, retrying transient failures."""
    factory = get_session_factory()

    async def attempt() -> T:
        async with factory() as session:
            result = await fn(session)
            await session.commit()
            return result

    return await with_retry(
        attempt,
        retries=global_settings.database_retries if retries is None else retries,
    )


async def close_db() -> None:
    """Close database connections"""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (for pollers and other non-request callers)"""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
