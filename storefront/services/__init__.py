"""
Service layer infrastructure - resilience patterns for datastore and connector calls.

Provides:
- ExpiringStore: Bounded TTL cache with LRU eviction
- CoalescingFetcher: One producer call per key for concurrent misses
- TokenCache: Connector OAuth token with refresh
- ConnectorClient: Authenticated connector client with typed errors
- with_retry: Bounded backoff for transient storage failures

Invalidation and the CacheService facade depend on the datastore layer and
are imported from their own modules.
"""

from storefront.services.errors import (
    ServiceError,
    ConnectorError,
    ConnectorAuthError,
    RequestTimeoutError,
    InvalidationQueueMissingError,
)
from storefront.services.cache import ExpiringStore, CacheEntry, CacheStats, hash_params
from storefront.services.singleflight import CoalescingFetcher, FetchStats
from storefront.services.token_cache import TokenCache, TokenState
from storefront.services.client import ConnectorClient, ConnectorResult
from storefront.services.retry import with_retry, failure_code, is_transient

__all__ = [
    # Errors
    "ServiceError",
    "ConnectorError",
    "ConnectorAuthError",
    "RequestTimeoutError",
    "InvalidationQueueMissingError",
    # Cache
    "ExpiringStore",
    "CacheEntry",
    "CacheStats",
    "hash_params",
    "CoalescingFetcher",
    "FetchStats",
    # Connector
    "TokenCache",
    "TokenState",
    "ConnectorClient",
    "ConnectorResult",
    # Retry
    "with_retry",
    "failure_code",
    "is_transient",
]
