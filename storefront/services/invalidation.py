"""
Cache invalidation channel.

Two interchangeable strategies behind one `invalidate()` call:
- LocalInvalidator: deletes matching keys from this process's store
- DurableInvalidator: appends a record to the `cache_invalidation` table;
  InvalidationPoller later applies pending records to the local store
"""

from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.datastore.repositories import CacheInvalidationRepository
from storefront.services.cache import ExpiringStore
from storefront.services.errors import InvalidationQueueMissingError
from storefront.services.retry import with_retry
from storefront.services.singleflight import CoalescingFetcher

WILDCARD = "*"


def split_wildcard(cache_key: str, prefix: bool = False) -> tuple[str, bool]:
    """Normalise the legacy trailing-wildcard form into (key, prefix)."""
    if cache_key.endswith(WILDCARD):
        return cache_key[: -len(WILDCARD)], True
    return cache_key, prefix


class LocalInvalidator:
    """Deletes keys from the local store, exactly or by literal prefix."""

    def __init__(self, store: ExpiringStore, fetcher: CoalescingFetcher | None = None):
        self._store = store
        self._fetcher = fetcher

    async def invalidate(
        self,
        cache_key: str,
        resource: str | None = None,
        prefix: bool = False,
    ) -> int:
        """
        Invalidate a key, or every key sharing a prefix.

        Args:
            cache_key: Exact key, or a prefix when prefix=True or it ends with '*'
            resource: Optional label of the changed resource (diagnostics only)
            prefix: Treat cache_key as a literal string prefix

        Returns:
            Number of store entries removed
        """
        key, prefix = split_wildcard(cache_key, prefix)

        if not prefix:
            if self._fetcher is not None:
                self._fetcher.discard(key)
            return 1 if self._store.delete(key) else 0

        if self._fetcher is not None:
            self._fetcher.discard_prefix(key)
        removed = 0
        for existing in self._store.keys():
            if existing.startswith(key):
                self._store.delete(existing)
                removed += 1

        if removed:
            label = f" ({resource})" if resource else ""
            logger.debug(f"Invalidated {removed} entries with prefix '{key}'{label}")
        return removed


class DurableInvalidator:
    """Records invalidations in the durable queue for every process to apply."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retries: int = 2,
    ):
        self._session_factory = session_factory
        self._retries = retries

    async def invalidate(
        self,
        cache_key: str,
        resource: str | None = None,
        prefix: bool = False,
    ) -> int:
        """
        Append an invalidation record. Prefix requests are stored with a
        trailing '*' so the poller applies them as prefix deletes.

        Returns:
            1 if the record was written, 0 if the write failed (logged)
        """
        key, prefix = split_wildcard(cache_key, prefix)
        stored_key = key + WILDCARD if prefix else key

        async def write() -> None:
            async with self._session_factory() as session:
                await CacheInvalidationRepository(session).enqueue(stored_key, resource)
                await session.commit()

        try:
            await with_retry(write, retries=self._retries)
        except Exception as e:
            # Logged, not raised to the writer
            logger.error(f"Failed to write cache invalidation for '{stored_key}': {e}")
            return 0
        return 1


class InvalidationPoller:
    """
    Periodically applies pending durable invalidations to the local store.

    Ticks never overlap: the job runs with max_instances=1 and poll_once()
    skips while a previous tick is still running. If the invalidation table
    does not exist, the poller logs once and disables itself for good.
    """

    JOB_ID = "cache_invalidation_poll"

    def __init__(
        self,
        local: LocalInvalidator,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 3.0,
        batch_size: int = 200,
    ):
        self.scheduler = AsyncIOScheduler()
        self._local = local
        self._session_factory = session_factory
        self._interval_seconds = max(1.0, interval_seconds)
        self._batch_size = batch_size
        self._is_running = False
        self._polling = False
        self._disabled = False

    async def poll_once(self) -> int:
        """Apply one batch of pending invalidations. Returns rows applied."""
        if self._disabled or self._polling:
            return 0

        self._polling = True
        try:
            async with self._session_factory() as session:
                repo = CacheInvalidationRepository(session)
                pending = await repo.fetch_pending(self._batch_size)
                if not pending:
                    return 0

                for record in pending:
                    await self._local.invalidate(record.cache_key, record.resource)
                await repo.mark_processed([record.id for record in pending])
                await session.commit()

            logger.debug(f"Applied {len(pending)} cache invalidations")
            return len(pending)

        except InvalidationQueueMissingError as e:
            logger.error(
                f"{e}. Run the cache_invalidation migration to enable durable "
                "invalidation. Stopping invalidation poller."
            )
            self._disable()
            return 0

        except Exception as e:
            logger.error(f"Invalidation poller error: {type(e).__name__}: {e}")
            return 0

        finally:
            self._polling = False

    def start(self) -> None:
        """Start polling (first tick runs immediately)."""
        if self._disabled:
            logger.warning("Invalidation poller is disabled, not starting")
            return
        if self._is_running:
            logger.warning("Invalidation poller is already running")
            return

        self.scheduler.add_job(
            self.poll_once,
            trigger="interval",
            seconds=self._interval_seconds,
            id=self.JOB_ID,
            name="Cache Invalidation Poller",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.start()
        self._is_running = True

        logger.info(
            f"Invalidation poller started: polling every {self._interval_seconds}s"
        )

    def stop(self) -> None:
        """Stop polling. Safe to call more than once."""
        if not self._is_running:
            return

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Invalidation poller stopped")

    def is_running(self) -> bool:
        """Check if the poller is scheduled and enabled."""
        return self._is_running and not self._disabled

    @property
    def disabled(self) -> bool:
        return self._disabled

    def _disable(self) -> None:
        # Runs inside a tick: remove the job, leave the scheduler up
        self._disabled = True
        if self._is_running:
            try:
                self.scheduler.remove_job(self.JOB_ID)
            except JobLookupError:
                pass
