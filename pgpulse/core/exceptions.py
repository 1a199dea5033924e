"""Domain-specific exceptions for pgpulse.

Every startup stage raises one of these so the entrypoint can log a single
critical line and exit non-zero.  Library errors are always chained with
``raise ... from exc``; nothing is swallowed.
"""

from __future__ import annotations


class PgpulseError(Exception):
    """Base exception for every fatal pgpulse failure."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(PgpulseError):
    """A required setting is missing or malformed (e.g. non-numeric DB_PORT)."""

    def __init__(self, message: str, fields: tuple[str, ...] = ()) -> None:
        self.fields = fields
        super().__init__(message)


# =============================================================================
# Database
# =============================================================================


class DatabaseConnectionError(PgpulseError):
    """Pool construction or the startup liveness probe failed."""


# =============================================================================
# HTTP server
# =============================================================================


class ServerError(PgpulseError):
    """The listener could not bind, or the accept loop stopped on its own."""


class ShutdownError(PgpulseError):
    """Graceful shutdown exceeded its grace period; connections were force-closed."""

    def __init__(self, message: str, grace: float = 0.0) -> None:
        self.grace = grace
        super().__init__(message)
