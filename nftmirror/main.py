"""
NFT Mirror — Application Entrypoint

Initializes async SQLAlchemy engine, configures structlog, and starts the scheduler.

Run via:
    python -m nftmirror.main
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nftmirror import __version__
from nftmirror.config import settings
from nftmirror.pipeline.scheduler import run_scheduler


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def configure_logging(log_level: str | None = None) -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to settings.LOG_LEVEL.
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper())

    # Configure stdlib logging first (for third-party libraries)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Configure structlog with JSON output
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


def create_db_engine(database_url: str | None = None) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    The DATABASE_URL is read from settings (env variable DATABASE_URL).
    Uses asyncpg for async Postgres connections; SQLite URLs get no pool sizing.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    url = database_url or settings.DATABASE_URL

    logger.info("database_engine_initializing", dialect=url.split(":", 1)[0])

    engine_options: dict[str, Any] = {}
    if not url.startswith("sqlite"):
        engine_options = {"pool_size": 5, "max_overflow": 10}
    if "+asyncpg" in url:
        # connect and per-statement timeouts enforced by the driver
        engine_options["connect_args"] = {
            "timeout": settings.STORE_TIMEOUT_SECONDS,
            "command_timeout": settings.STORE_TIMEOUT_SECONDS,
        }

    engine = create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,  # Verify connections before use
        **engine_options,
    )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main() -> None:
    """
    Application entrypoint. Initializes subsystems and starts the scheduler.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Create async database engine and session factory
    3. Verify database connection (health check)
    4. Start the scheduler (run indefinitely until shutdown signal)
    """
    configure_logging()
    logger = structlog.get_logger(__name__)

    logger.info("nftmirror_startup_begin", version=__version__)

    if not settings.SYNC_ENABLED:
        logger.warning("config_sync_disabled", note="every scheduled run will be a no-op")

    engine, session_factory = create_db_engine()

    # Health check: verify database connection
    try:
        await check_database(session_factory)
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    logger.info(
        "nftmirror_startup_complete",
        ticker=settings.DEFAULT_TICKER,
        sync_enabled=settings.SYNC_ENABLED,
        scheduled_syncs_disabled=settings.DISABLE_SCHEDULED_SYNCS,
    )

    # Run the scheduler (blocks until shutdown)
    try:
        await run_scheduler(session_factory)
    except KeyboardInterrupt:
        logger.info("nftmirror_interrupted_by_user")
    except Exception as e:
        logger.error(
            "nftmirror_fatal_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await engine.dispose()
        logger.info("nftmirror_shutdown_complete")


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
