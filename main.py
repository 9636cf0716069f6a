"""
Storefront resilience layer entry point
Starts the database engine, the cache service (with its invalidation poller
when durable invalidation is enabled) and the cache admin server.
"""

import asyncio

import uvicorn
from loguru import logger

from storefront.admin.server import create_admin_server
from storefront.datastore.engine import close_db, get_session_factory, init_db
from storefront.services.cache_service import (
    CacheService,
    close_cache_service,
    set_cache_service,
)
from storefront.settings import global_settings


async def main() -> None:
    """Main function"""
    logger.info("Starting storefront cache layer...")

    try:
        logger.info("Initializing database...")
        await init_db(global_settings)

        cache = CacheService(global_settings, get_session_factory())
        set_cache_service(cache)
        cache.start()
        logger.info(
            "Cache ready "
            f"(max={global_settings.cache_max}, durable={cache.durable_mode})"
        )

        app = create_admin_server(cache, global_settings.admin_cache_secret)
        config = uvicorn.Config(
            app,
            host=global_settings.admin_host,
            port=global_settings.admin_port,
            log_level="info",
        )
        await uvicorn.Server(config).serve()

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        logger.info("Stopping cache service...")
        await close_cache_service()

        logger.info("Closing database connections...")
        await close_db()

        logger.info("Storefront cache layer stopped")


if __name__ == "__main__":
    asyncio.run(main())
