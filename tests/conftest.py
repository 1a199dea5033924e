"""Shared fixtures: a clean DB_* environment, free TCP ports, readiness polling."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Awaitable, Callable

import httpx
import pytest

DB_ENV = {
    "DB_NAME": "pulse",
    "DB_HOST": "db.internal",
    "DB_PORT": "5432",
    "DB_USERNAME": "svc",
    "DB_PASSWORD": "s3cret",
}

_OPTIONAL_ENV = (
    "DB_CONNECT_TIMEOUT",
    "DB_POOL_SIZE",
    "DB_MAX_OVERFLOW",
    "HTTP_HOST",
    "HTTP_PORT",
    "SHUTDOWN_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every variable pgpulse reads so the host environment cannot leak in."""
    for name in (*DB_ENV, *_OPTIONAL_ENV):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture()
def db_env(clean_env: pytest.MonkeyPatch) -> dict[str, str]:
    """Populate all five required DB_* variables."""
    for name, value in DB_ENV.items():
        clean_env.setenv(name, value)
    return dict(DB_ENV)


@pytest.fixture()
def free_port() -> int:
    """Return a TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture()
def wait_until_serving() -> Callable[[int], Awaitable[None]]:
    """Return a coroutine function that polls GET / on loopback until it answers."""

    async def _wait(port: int, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with httpx.AsyncClient() as client:
            while True:
                try:
                    response = await client.get(f"http://127.0.0.1:{port}/")
                except httpx.TransportError:
                    if loop.time() > deadline:
                        raise
                    await asyncio.sleep(0.05)
                    continue
                assert response.status_code == 200
                return

    return _wait
