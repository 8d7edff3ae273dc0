"""FastAPI application factory"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from streamnotify import __version__
from streamnotify.core.config import Settings, get_settings
from streamnotify.core.database import (
    DatabaseManager,
    PoolConfig,
    get_database_manager,
    init_database_manager,
)
from streamnotify.core.dependencies import close_bot_notifier, close_twitch_api, get_reconciler
from streamnotify.core.error_handlers import register_exception_handlers
from streamnotify.core.logging import setup_logging
from streamnotify.migrations import MigrationRunner
from streamnotify.routers import auth_router, eventsub_router, notifications_router

logger = logging.getLogger(__name__)

# Track server start time
_start_time: float = 0.0
_db_retry_task: asyncio.Task | None = None
_sweep_task: asyncio.Task | None = None


async def _on_connected(db_manager: DatabaseManager, settings: Settings) -> None:
    """Apply pending migrations once the pool is up."""
    if not settings.run_migrations or not db_manager.is_connected:
        return
    await MigrationRunner(db_manager.pool).run_pending()


async def _db_retry_loop(db_manager: DatabaseManager, settings: Settings) -> None:
    """Background loop to retry DB connection after startup timeout."""
    delay = 5
    max_delay = 60
    while True:
        await asyncio.sleep(delay)
        if db_manager.is_connected:
            logger.info("DB retry loop: pool already connected, stopping")
            return
        try:
            await db_manager.connect()
            logger.info("Database connected (background retry)")
            await _on_connected(db_manager, settings)
            return
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(
                f"DB background retry failed: {type(e).__name__}: {e}, next retry in {min(delay * 2, max_delay)}s"
            )
            await db_manager.disconnect()
            delay = min(delay * 2, max_delay)


async def _orphan_sweep_loop(db_manager: DatabaseManager, interval: int) -> None:
    """Periodically delete remote subscriptions no broadcaster references."""
    while True:
        await asyncio.sleep(interval)
        if not db_manager.is_connected:
            logger.warning("Orphan sweep skipped: database not connected")
            continue
        try:
            await get_reconciler(db_manager.pool).sweep()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Orphan sweep failed: {type(e).__name__}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle startup and shutdown"""
    global _start_time, _db_retry_task, _sweep_task
    _start_time = time.time()

    settings = get_settings()

    # Startup
    logger.info("Starting stream notification service")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"EventSub callback: {settings.callback_url}")

    # Wait up to 30s for the pool before accepting requests, then keep trying in background
    db_manager = init_database_manager(settings.database_url, PoolConfig(ssl=settings.database_ssl))

    try:
        await asyncio.wait_for(db_manager.connect(), timeout=30)
        logger.info("Database connected")
        await _on_connected(db_manager, settings)
    except TimeoutError:
        logger.warning("DB connection timed out during startup, retrying in background")
        _db_retry_task = asyncio.create_task(_db_retry_loop(db_manager, settings))
    except Exception as e:
        logger.error(
            f"DB startup failed: {type(e).__name__}: {e}, retrying in background"
        )
        await db_manager.disconnect()
        _db_retry_task = asyncio.create_task(_db_retry_loop(db_manager, settings))

    if settings.orphan_sweep_interval > 0:
        _sweep_task = asyncio.create_task(
            _orphan_sweep_loop(db_manager, settings.orphan_sweep_interval)
        )
        logger.info(f"Orphan sweep started (interval={settings.orphan_sweep_interval}s)")

    yield

    # Shutdown
    logger.info("Shutting down stream notification service")
    if _db_retry_task:
        _db_retry_task.cancel()
    if _sweep_task:
        _sweep_task.cancel()
    try:
        await close_bot_notifier()
        await close_twitch_api()
        await db_manager.disconnect()
        logger.info("Database disconnected")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()

    # Setup logging first
    setup_logging(settings)

    app = FastAPI(
        title="Stream Notify",
        description="Twitch EventSub stream.online relay for the Discord bot",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    register_exception_handlers(app)

    # Register routers
    app.include_router(notifications_router.router)
    app.include_router(auth_router.router)
    app.include_router(eventsub_router.router)

    # Liveness probe, no external dependency
    @app.get("/health")
    async def health():
        """Liveness check (no DB dependency)"""
        return {
            "status": "healthy",
            "uptime_seconds": int(time.time() - _start_time),
        }

    @app.get("/status")
    async def status():
        """Readiness / status endpoint, includes actual DB health check"""
        try:
            db_manager = get_database_manager()
        except RuntimeError:
            db_manager = None
        db_ok = db_manager is not None and await db_manager.check_health()
        return {
            "service": "streamnotify",
            "version": __version__,
            "uptime_seconds": int(time.time() - _start_time),
            "db_connected": db_ok,
            "environment": settings.environment,
        }

    @app.api_route("/ping", methods=["GET", "HEAD"], response_class=PlainTextResponse)
    async def ping():
        """Ping endpoint"""
        return "pong"

    logger.info("FastAPI application configured")

    return app
