"""
Repository layer - wraps data access for the invalidation queue
"""

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import inspect, select, update
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.datastore.models import CacheInvalidationDB
from storefront.services.errors import InvalidationQueueMissingError


@dataclass(frozen=True)
class PendingInvalidation:
    """An unprocessed invalidation row."""

    id: int
    cache_key: str
    resource: str | None = None


class CacheInvalidationRepository:
    """Cache invalidation queue repository.

    Missing-table failures are turned into InvalidationQueueMissingError here,
    so callers never inspect driver error messages.
    """

    table_name = CacheInvalidationDB.__tablename__

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, cache_key: str, resource: str | None = None) -> None:
        """Append an invalidation record."""
        self.session.add(CacheInvalidationDB(cache_key=cache_key, resource=resource))
        try:
            await self.session.flush()
        except (OperationalError, ProgrammingError) as e:
            await self._raise_if_missing(e)
            raise

    async def fetch_pending(self, limit: int = 200) -> list[PendingInvalidation]:
        """Get unprocessed records in ascending id order."""
        stmt = (
            select(
                CacheInvalidationDB.id,
                CacheInvalidationDB.cache_key,
                CacheInvalidationDB.resource,
            )
            .where(CacheInvalidationDB.processed.is_(False))
            .order_by(CacheInvalidationDB.id)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
        except (OperationalError, ProgrammingError) as e:
            await self._raise_if_missing(e)
            raise
        return [
            PendingInvalidation(id=row.id, cache_key=row.cache_key, resource=row.resource)
            for row in result
        ]

    async def mark_processed(self, ids: list[int]) -> None:
        """Mark a batch of records processed in one statement."""
        if not ids:
            return
        stmt = (
            update(CacheInvalidationDB)
            .where(CacheInvalidationDB.id.in_(ids))
            .values(processed=True)
        )
        await self.session.execute(stmt)
        logger.debug(f"Marked {len(ids)} cache invalidations processed")

    async def table_exists(self) -> bool:
        """Check whether the invalidation table exists."""
        conn = await self.session.connection()
        return await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table(self.table_name)
        )

    async def _raise_if_missing(self, error: Exception) -> None:
        # If the inspection itself fails, the caller re-raises the original error
        try:
            await self.session.rollback()
            exists = await self.table_exists()
        except (OperationalError, ProgrammingError):
            return
        if not exists:
            raise InvalidationQueueMissingError(self.table_name) from error
