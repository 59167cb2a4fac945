"""relaysync exception hierarchy.

Typed exceptions let callers tell transient failures from fatal ones and
keep ``CancelledError`` out of broad handlers.

Exception hierarchy:

```text
RelaySyncError (base -- never raised directly)
├── ConfigurationError      -- config validation, missing keys, bad YAML
├── DatabaseError            -- pool/archive/query failures
│   ├── ConnectionPoolError  -- transient: pool exhausted, network blip
│   └── QueryError           -- permanent: bad SQL, constraint violation
├── ConnectivityError        -- relay unreachable, transport failures
│   └── RelayTimeoutError    -- connect, request or deadline timed out
├── ProtocolError            -- relay answered with something unusable
└── WorkerError              -- an execution unit died without results
```

Only [DatabaseError][relaysync.core.exceptions.DatabaseError] and
[ConfigurationError][relaysync.core.exceptions.ConfigurationError] are
allowed to escape a synchronization cycle. Everything raised while talking
to a single relay is contained in that relay's task.

See Also:
    [Pool][relaysync.core.pool.Pool]: Raises
        [ConnectionPoolError][relaysync.core.exceptions.ConnectionPoolError]
        once retries are exhausted.
    [RelaySession][relaysync.utils.protocol.RelaySession]: Raises
        [ConnectivityError][relaysync.core.exceptions.ConnectivityError]
        subclasses.
"""

from __future__ import annotations


class RelaySyncError(Exception):
    """Base exception for all relaysync errors.

    Never raised directly -- always use a specific subclass.
    """


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(RelaySyncError):
    """Invalid or missing configuration (YAML, env vars, CLI flags).

    Raised at startup, before any database or relay is contacted.
    """


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class DatabaseError(RelaySyncError):
    """Base for all database-related errors."""


class ConnectionPoolError(DatabaseError):
    """Transient database error: pool exhausted, connection refused, network blip.

    Raised by [Pool][relaysync.core.pool.Pool] after its own retries are
    exhausted, so callers should treat the operation as failed for this
    cycle rather than retrying again.
    """


class QueryError(DatabaseError):
    """Permanent database error: bad SQL, constraint violation, data integrity.

    Callers should NOT retry -- the query itself is wrong.
    """


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class ConnectivityError(RelaySyncError):
    """Base for all relay/network connectivity errors."""


class RelayTimeoutError(ConnectivityError):
    """Connection, request, or per-relay deadline timed out."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(RelaySyncError):
    """The relay replied, but not with anything the engine can use."""


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


class WorkerError(RelaySyncError):
    """An execution unit exited without returning its results.

    Attributes:
        exitcode: Process exit code, or ``None`` when it is unknown.
    """

    def __init__(self, message: str, exitcode: int | None = None) -> None:
        super().__init__(message)
        self.exitcode = exitcode
