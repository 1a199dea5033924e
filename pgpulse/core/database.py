"""Database pool construction and the startup readiness gate.

The pool is an async SQLAlchemy engine backed by asyncpg.  Sizing, pre-ping
and reconnect behaviour are left to SQLAlchemy; the only policy here is a
single liveness probe at startup.  If that probe fails the process must not
serve traffic, and there is no retry loop.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from pgpulse.config import Settings
from pgpulse.core.exceptions import DatabaseConnectionError

logger = logging.getLogger(__name__)

DRIVERNAME = "postgresql+asyncpg"

# Errors a probe may surface: wrapped DBAPI errors, raw socket errors from
# asyncpg (connection refused, DNS failure), and the probe deadline.
_PROBE_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


def build_url(settings: Settings) -> URL:
    """Build the asyncpg URL from the same components as ``Settings.dsn``.

    Components are passed unencoded; ``URL.create`` escapes them itself.
    """
    return URL.create(
        drivername=DRIVERNAME,
        username=settings.db_username,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_name,
    )


async def ping(engine: AsyncEngine, timeout: float) -> None:
    """Run one ``SELECT 1`` round-trip, bounded by ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))


async def connect(settings: Settings, timeout: float | None = None) -> AsyncEngine:
    """Create the connection pool and verify the database is reachable.

    Args:
        settings: Loaded configuration.  Only the derived URL is handed to
            the engine; the settings object itself is not retained.
        timeout: Deadline for the liveness probe in seconds.  Defaults to
            ``settings.db_connect_timeout``.

    Returns:
        A ready ``AsyncEngine``.  The caller owns it and must ``close()`` it.

    Raises:
        DatabaseConnectionError: If the pool cannot be built or the probe fails.
    """
    if timeout is None:
        timeout = settings.db_connect_timeout
    target = f"{settings.db_host}:{settings.db_port}/{settings.db_name}"

    try:
        engine = create_async_engine(
            build_url(settings),
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            connect_args={"timeout": timeout},
            echo=False,
        )
    except SQLAlchemyError as exc:
        raise DatabaseConnectionError(
            f"Could not create connection pool for {target}: {exc}"
        ) from exc

    try:
        await ping(engine, timeout)
    except _PROBE_ERRORS as exc:
        await engine.dispose()
        logger.error("Database liveness probe failed for %s", target)
        raise DatabaseConnectionError(
            f"Database at {target} is unreachable: {exc!r}"
        ) from exc

    logger.info("Database connection pool ready (%s)", target)
    return engine


async def close(engine: AsyncEngine) -> None:
    """Dispose the pool.  Called once at process exit."""
    await engine.dispose()
    logger.info("Database connection pool disposed")
