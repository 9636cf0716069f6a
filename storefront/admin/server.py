"""FastAPI server for cache administration."""

import hmac
from typing import Optional

from fastapi import FastAPI, Header
from loguru import logger
from pydantic import BaseModel

from storefront.exceptions import ForbiddenError, NotFoundError, ValidationError
from storefront.services.cache_service import CacheService


class FlushRequest(BaseModel):
    key: Optional[str] = None
    prefix: Optional[str] = None
    secret: Optional[str] = None


class CacheAdminServer:
    """HTTP endpoints to inspect and flush the cache.

    Every endpoint is guarded by ADMIN_CACHE_SECRET. When no secret is
    configured the endpoints answer 404 as if they did not exist.
    """

    def __init__(self, cache: CacheService, secret: str):
        self.cache = cache
        self.secret = secret
        self.app = FastAPI(title="Storefront Cache Admin")

        # Register routes
        self.app.post("/admin/cache/flush")(self.flush)
        self.app.post("/admin/cache/flush-prefix")(self.flush_prefix)
        self.app.get("/admin/cache/stats")(self.stats)
        self.app.get("/health")(self.health_check)

    def _authorize(self, supplied: Optional[str]) -> None:
        if not self.secret:
            raise NotFoundError()
        if not supplied or not hmac.compare_digest(str(supplied), self.secret):
            raise ForbiddenError()

    async def flush(
        self,
        body: FlushRequest,
        x_admin_cache_secret: Optional[str] = Header(None),
    ):
        """Invalidate a single cache key."""
        self._authorize(x_admin_cache_secret or body.secret)
        if not body.key:
            raise ValidationError("missing_key")

        await self.cache.invalidate(body.key)
        logger.info(f"Admin flushed cache key {body.key}")
        return {"ok": True, "key": body.key}

    async def flush_prefix(
        self,
        body: FlushRequest,
        x_admin_cache_secret: Optional[str] = Header(None),
    ):
        """Invalidate every key under a prefix ('products:v1:' or 'products:v1:*')."""
        self._authorize(x_admin_cache_secret or body.secret)
        if not body.prefix:
            raise ValidationError("missing_prefix")

        removed = await self.cache.invalidate(body.prefix, prefix=True)
        logger.info(f"Admin flushed cache prefix {body.prefix} ({removed})")
        return {"ok": True, "prefix": body.prefix, "removed": removed}

    async def stats(
        self,
        secret: Optional[str] = None,
        x_admin_cache_secret: Optional[str] = Header(None),
    ):
        """Cache statistics."""
        self._authorize(x_admin_cache_secret or secret)
        return {"ok": True, "stats": self.cache.stats()}

    async def health_check(self):
        """Health check endpoint."""
        return {"status": "ok", "service": "storefront-cache"}


def create_admin_server(cache: CacheService, secret: str) -> FastAPI:
    """Create FastAPI app for cache administration.

    Args:
        cache: CacheService instance
        secret: Shared admin secret (empty disables the endpoints)

    Returns:
        FastAPI app
    """
    server = CacheAdminServer(cache, secret)
    return server.app
