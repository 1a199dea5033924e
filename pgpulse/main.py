"""pgpulse entry point.

Start with:
    pgpulse            (console script)
    python -m pgpulse.main

Startup is strictly sequential: load settings → build and probe the pool →
serve.  Any failure along the way is logged once at CRITICAL and turned into
exit status 1; a cancellation-triggered shutdown exits 0.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from pgpulse.api.health import router as health_router
from pgpulse.config import Settings, load_settings
from pgpulse.core.database import close, connect
from pgpulse.core.exceptions import PgpulseError
from pgpulse.core.server import serve

assert sys.version_info >= (3, 12), "pgpulse requires Python 3.12+"

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger; safe to call again once settings are known."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )


# ---------------------------------------------------------------------------
#  FastAPI application
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: the pool is owned by the process, not the app."""
    logger.info("pgpulse accepting connections")
    yield
    logger.info("pgpulse shutting down")


def create_app(db: AsyncEngine | None = None) -> FastAPI:
    """Build the ASGI app.  ``db`` is exposed to handlers as ``app.state.db``."""
    app = FastAPI(
        title="pgpulse",
        description="Liveness endpoint for a PostgreSQL-backed service",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.db = db
    app.include_router(health_router)
    return app


@dataclass(frozen=True)
class Application:
    """The single process-wide value: the HTTP app and the pool it may use."""

    api: FastAPI
    db: AsyncEngine


async def build_application(settings: Settings) -> Application:
    """Create the pool (fail-fast probe included) and the app around it."""
    db = await connect(settings)
    return Application(api=create_app(db), db=db)


# ---------------------------------------------------------------------------
#  Process lifecycle
# ---------------------------------------------------------------------------

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, cancel.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler.
            logger.warning("Cannot install handler for %s on this platform", sig.name)


def _remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            pass


async def run(
    cancel: asyncio.Event | None = None,
    env_file: str | Path | None = ".env",
) -> None:
    """Load settings, connect, and serve until ``cancel`` is set.

    Raises:
        ConfigError, DatabaseConnectionError, ServerError, ShutdownError
    """
    settings = load_settings(env_file)
    configure_logging(settings.log_level)
    logger.info("pgpulse starting up")

    application = await build_application(settings)
    if cancel is None:
        cancel = asyncio.Event()

    _install_signal_handlers(cancel)
    try:
        await serve(
            application.api,
            cancel,
            host=settings.http_host,
            port=settings.http_port,
            grace=settings.shutdown_timeout,
        )
    finally:
        _remove_signal_handlers()
        await close(application.db)


def main() -> None:
    """Console entry point: run the service and map failures to exit status 1."""
    configure_logging()
    try:
        asyncio.run(run())
    except PgpulseError as exc:
        logger.critical("%s: %s", type(exc).__name__, exc)
        sys.exit(1)
    logger.info("pgpulse stopped")


if __name__ == "__main__":
    main()
