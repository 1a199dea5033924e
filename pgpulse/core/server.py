"""HTTP server and shutdown coordinator.

Runs uvicorn on a pre-bound socket and races two events:

- the external ``cancel`` event  → bounded graceful shutdown, return ``None``
- the serve task finishing first → ``ServerError`` (no shutdown attempted)

Whichever arm loses is always released: the cancel waiter is cancelled and
the listening socket is closed on every path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import Iterator

import uvicorn
from fastapi import FastAPI

from pgpulse.core.exceptions import ServerError, ShutdownError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_GRACE = 5.0

# Bound on waiting for the serve task after connections were force-closed.
FORCE_CLOSE_TIMEOUT = 1.0


class CoordinatedServer(uvicorn.Server):
    """uvicorn server that never installs its own signal handlers.

    Cancellation reaches the server only through the coordinator's
    ``cancel`` event, which the process entrypoint wires to SIGINT/SIGTERM.
    """

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on ``host:port``.

    Raises:
        ServerError: If the address cannot be bound (e.g. port already in use).
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        sock = socket.create_server((host, port), family=family, backlog=2048)
    except OSError as exc:
        logger.error("Could not bind %s:%d: %s", host, port, exc)
        raise ServerError(f"Could not bind {host}:{port}: {exc}") from exc
    sock.setblocking(False)
    return sock


async def _run_server(server: CoordinatedServer, sock: socket.socket) -> None:
    """Run uvicorn, turning its startup sys.exit() into an ordinary ServerError."""
    try:
        await server.serve(sockets=[sock])
    except SystemExit as exc:
        raise ServerError(f"HTTP server exited during startup (status {exc.code})") from exc


def _task_error(task: asyncio.Task[None]) -> BaseException | None:
    if task.cancelled():
        return asyncio.CancelledError()
    return task.exception()


async def serve(
    app: FastAPI,
    cancel: asyncio.Event,
    *,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    grace: float = DEFAULT_GRACE,
) -> None:
    """Serve ``app`` until ``cancel`` is set or the server fails.

    Args:
        app: The ASGI application to serve.
        cancel: Set by the caller to request a graceful shutdown.
        host: Interface to bind.
        port: TCP port to bind.  ``0`` picks an ephemeral port.
        grace: Seconds in-flight requests get to finish after ``cancel``.

    Raises:
        ServerError: Bind failure, or the server stopped before ``cancel`` was set.
        ShutdownError: Startup or in-flight requests outlived the grace period.
    """
    sock = bind_socket(host, port)
    config = uvicorn.Config(
        app,
        lifespan="on",
        log_config=None,
        timeout_graceful_shutdown=grace,
    )
    server = CoordinatedServer(config)

    serve_task = asyncio.create_task(_run_server(server, sock), name="pgpulse-serve")
    cancel_task = asyncio.create_task(cancel.wait(), name="pgpulse-cancel")
    logger.info("Listening on %s:%d", host, sock.getsockname()[1])

    try:
        done, _ = await asyncio.wait(
            {serve_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if serve_task in done:
            error = _task_error(serve_task)
            if isinstance(error, ServerError):
                raise error
            if error is not None:
                raise ServerError(f"HTTP server failed: {error!r}") from error
            raise ServerError("HTTP server stopped before shutdown was requested")

        await _shutdown(server, serve_task, grace)
    finally:
        cancel_task.cancel()
        if not serve_task.done():
            serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await serve_task
        sock.close()


async def _shutdown(
    server: CoordinatedServer, serve_task: asyncio.Task[None], grace: float
) -> None:
    """Stop accepting, drain in-flight requests, force-close after ``grace``.

    ``grace`` bounds the whole sequence, including any wait for a server that
    is still starting up.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace

    # uvicorn skips its shutdown sequence if should_exit is set mid-startup.
    try:
        async with asyncio.timeout_at(deadline):
            while not server.started and not serve_task.done():
                await asyncio.sleep(0.05)
    except TimeoutError:
        logger.warning("HTTP server still starting after %.1fs; cancelling it", grace)
        serve_task.cancel()
        await asyncio.wait({serve_task})
        _task_error(serve_task)
        raise ShutdownError(
            f"HTTP server did not finish starting within the {grace:.1f}s grace period",
            grace=grace,
        ) from None

    logger.info("Shutdown requested; draining connections (grace %.1fs)", grace)
    server.should_exit = True

    done, _ = await asyncio.wait(
        {serve_task}, timeout=max(deadline - loop.time(), 0.0)
    )
    if done:
        error = _task_error(serve_task)
        if error is not None:
            raise ShutdownError(f"Shutdown failed: {error!r}", grace=grace) from error
        logger.info("HTTP server stopped")
        return

    connections = list(server.server_state.connections)
    logger.warning(
        "Grace period of %.1fs exceeded; force-closing %d connection(s)",
        grace,
        len(connections),
    )
    server.force_exit = True
    for connection in connections:
        connection.transport.close()

    done, _ = await asyncio.wait({serve_task}, timeout=FORCE_CLOSE_TIMEOUT)
    if done:
        # Retrieve the result so a late failure is not reported as unhandled.
        _task_error(serve_task)
    else:
        serve_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await serve_task
    raise ShutdownError(
        f"Graceful shutdown exceeded the {grace:.1f}s grace period", grace=grace
    )
