"""
Async PostgreSQL connection pool built on asyncpg.

Every database interaction in relaysync goes through
[Pool.run()][relaysync.core.pool.Pool.run]: acquire a connection with a
capped wait, optionally open a transaction, execute a caller-supplied
coroutine, and retry the whole unit on transient failures with exponential
backoff. Because a retried unit starts over on a fresh connection inside a
fresh transaction, callers must only pass idempotent work (every write in
[Archive][relaysync.core.archive.Archive] uses ``ON CONFLICT``).

Failure mapping:

* ``InterfaceError``, ``PostgresConnectionError``, ``OSError`` and
  acquisition ``TimeoutError`` are transient: retried, then raised as
  [ConnectionPoolError][relaysync.core.exceptions.ConnectionPoolError].
* Any other ``PostgresError`` is permanent and raised immediately as
  [QueryError][relaysync.core.exceptions.QueryError].

Examples:
    ```python
    pool = Pool.from_yaml("config/archive.yaml")

    async with pool:
        rows = await pool.fetch("SELECT url FROM relay LIMIT 10")

        async def write(conn):
            await conn.execute("INSERT INTO relay ... ON CONFLICT DO NOTHING")

        await pool.run(write, name="insert_relay")
    ```
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar, cast

import asyncpg
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError, ConnectionPoolError, QueryError
from .logger import Logger
from .yaml import load_yaml


T = TypeVar("T")

# asyncpg.PostgresConnectionError is a PostgresError subclass, so it must be
# matched before the permanent-error clause.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
    OSError,
    TimeoutError,
)


def _json_encode(value: Any) -> str:
    """Encode a value for a JSON/JSONB column, passing pre-serialized strings through."""
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Register JSON/JSONB codecs on every new pooled connection."""
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_encode,
            decoder=json.loads,
            schema="pg_catalog",
        )


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """PostgreSQL connection parameters.

    The password is never read from configuration files: it is taken from
    the environment variable named by ``password_env``.
    """

    host: str = Field(default="localhost", min_length=1, description="Database hostname")
    port: int = Field(default=5432, ge=1, le=65535, description="Database port")
    database: str = Field(default="relaysync", min_length=1, description="Database name")
    user: str = Field(default="relaysync", min_length=1, description="Database user")
    password_env: str = Field(
        default="RELAYSYNC_DB_PASSWORD",  # pragma: allowlist secret
        min_length=1,
        description="Environment variable name for the database password",
    )
    password: SecretStr = Field(description="Database password (loaded from password_env)")

    @model_validator(mode="before")
    @classmethod
    def resolve_password(cls, data: Any) -> Any:
        """Resolve the password from the environment when not given explicitly."""
        if isinstance(data, dict) and "password" not in data:
            env_var = data.get("password_env", "RELAYSYNC_DB_PASSWORD")  # pragma: allowlist secret
            value = os.getenv(env_var)
            if not value:
                raise ValueError(f"{env_var} environment variable not set")
            data = {**data, "password": SecretStr(value)}
        return data


class PoolLimitsConfig(BaseModel):
    """Connection pool size and recycling limits."""

    min_size: int = Field(default=2, ge=1, le=100, description="Minimum connections")
    max_size: int = Field(default=20, ge=1, le=200, description="Maximum connections")
    max_queries: int = Field(default=50_000, ge=100, description="Queries before recycling")
    max_inactive_connection_lifetime: float = Field(
        default=300.0, ge=0.0, description="Idle timeout (seconds)"
    )

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v: int, info: ValidationInfo) -> int:
        """Ensure max_size >= min_size."""
        min_size = info.data.get("min_size", 2)
        if v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v


class PoolTimeoutsConfig(BaseModel):
    """Timeout settings for pool operations (in seconds)."""

    acquisition: float = Field(
        default=10.0, ge=0.1, description="Maximum wait for a free pooled connection"
    )


class PoolRetryConfig(BaseModel):
    """Retry strategy for transient connection failures.

    Exponential backoff waits ``initial_delay * 2**attempt`` seconds, linear
    backoff ``initial_delay * (attempt + 1)``; both are capped at
    ``max_delay``.
    """

    max_attempts: int = Field(default=3, ge=1, le=10, description="Max attempts per operation")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Initial retry delay")
    max_delay: float = Field(default=10.0, ge=0.0, description="Maximum retry delay")
    exponential_backoff: bool = Field(default=True, description="Use exponential backoff")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay >= initial_delay."""
        initial_delay = info.data.get("initial_delay", 1.0)
        if v < initial_delay:
            raise ValueError(f"max_delay ({v}) must be >= initial_delay ({initial_delay})")
        return v


class ServerSettingsConfig(BaseModel):
    """PostgreSQL session settings applied to every pooled connection."""

    application_name: str = Field(default="relaysync", description="Application name")
    timezone: str = Field(default="UTC", description="Timezone")
    statement_timeout: int = Field(
        default=300_000, ge=0, description="Max query execution time in milliseconds (0=unlimited)"
    )


class PoolConfig(BaseModel):
    """Aggregate configuration for the connection pool."""

    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig.model_validate({}))
    limits: PoolLimitsConfig = Field(default_factory=PoolLimitsConfig)
    timeouts: PoolTimeoutsConfig = Field(default_factory=PoolTimeoutsConfig)
    retry: PoolRetryConfig = Field(default_factory=PoolRetryConfig)
    server_settings: ServerSettingsConfig = Field(default_factory=ServerSettingsConfig)

    def to_portable_dict(self) -> dict[str, Any]:
        """Dump the configuration without the password.

        Used to rebuild an equivalent pool in a worker process, which
        resolves the password from its own environment.
        """
        return self.model_dump(mode="json", exclude={"database": {"password"}})


# ---------------------------------------------------------------------------
# Pool Class
# ---------------------------------------------------------------------------


class Pool:
    """Async PostgreSQL connection pool manager.

    Wraps ``asyncpg.Pool`` with bounded acquisition, retrying units of work,
    and JSON codecs. Domain code uses [Archive][relaysync.core.archive.Archive]
    rather than this class.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        """Create a disconnected pool.

        Args:
            config: Pool configuration. Defaults read the password from
                ``RELAYSYNC_DB_PASSWORD``.
        """
        self._config = config or PoolConfig()
        self._pool: asyncpg.Pool | None = None
        self._is_connected: bool = False
        self._connection_lock = asyncio.Lock()
        self._logger = Logger("pool")

    @classmethod
    def from_yaml(cls, config_path: str) -> Pool:
        """Create a Pool from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> Pool:
        """Create a Pool from a configuration dictionary.

        Raises:
            ConfigurationError: If the dictionary fails validation.
        """
        try:
            config = PoolConfig.model_validate(config_dict)
        except ValueError as e:  # ValidationError, or the password lookup in a default factory
            raise ConfigurationError(f"Invalid pool configuration: {e}") from e
        return cls(config=config)

    def _retry_delay(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt + 1``."""
        retry = self._config.retry
        if retry.exponential_backoff:
            delay = retry.initial_delay * (2**attempt)
        else:
            delay = retry.initial_delay * (attempt + 1)
        return float(min(delay, retry.max_delay))

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the asyncpg pool, retrying with backoff.

        Raises:
            ConnectionPoolError: If all attempts fail.
        """
        async with self._connection_lock:
            if self._is_connected:
                return

            db = self._config.database
            limits = self._config.limits
            settings = self._config.server_settings
            self._logger.info(
                "connection_starting", host=db.host, port=db.port, database=db.database
            )

            attempts = self._config.retry.max_attempts
            for attempt in range(attempts):
                try:
                    self._pool = await asyncpg.create_pool(
                        host=db.host,
                        port=db.port,
                        database=db.database,
                        user=db.user,
                        password=db.password.get_secret_value(),
                        min_size=limits.min_size,
                        max_size=limits.max_size,
                        max_queries=limits.max_queries,
                        max_inactive_connection_lifetime=limits.max_inactive_connection_lifetime,
                        timeout=self._config.timeouts.acquisition,
                        init=_init_connection,
                        server_settings={
                            "application_name": settings.application_name,
                            "timezone": settings.timezone,
                            "statement_timeout": str(settings.statement_timeout),
                        },
                    )
                except (asyncpg.PostgresError, *_TRANSIENT_ERRORS) as e:
                    if attempt + 1 >= attempts:
                        self._logger.error("connection_failed", attempts=attempts, error=str(e))
                        raise ConnectionPoolError(
                            f"Failed to connect after {attempts} attempts: {e}"
                        ) from e
                    delay = self._retry_delay(attempt)
                    self._logger.warning(
                        "connection_retry", attempt=attempt + 1, delay_s=delay, error=str(e)
                    )
                    await asyncio.sleep(delay)
                else:
                    self._is_connected = True
                    self._logger.info("connection_established")
                    return

    async def close(self) -> None:
        """Close the pool. Idempotent; state is reset even if close raises."""
        async with self._connection_lock:
            if self._pool is not None:
                try:
                    await self._pool.close()
                    self._logger.info("connection_closed")
                finally:
                    self._pool = None
                    self._is_connected = False

    # -------------------------------------------------------------------------
    # Connection Acquisition
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection, waiting at most ``timeouts.acquisition`` seconds.

        Raises:
            RuntimeError: If the pool has not been connected yet.
            TimeoutError: If no connection frees up in time.
        """
        if not self._is_connected or self._pool is None:
            raise RuntimeError("Pool not connected. Call connect() first.")
        async with self._pool.acquire(timeout=self._config.timeouts.acquisition) as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection with an open transaction.

        Commits on normal exit and rolls back if an exception (including
        cancellation) leaves the block. No retry is applied here; use
        [run()][relaysync.core.pool.Pool.run] for retried units of work.
        """
        async with self.acquire() as conn, conn.transaction():
            yield conn

    # -------------------------------------------------------------------------
    # Retried units of work
    # -------------------------------------------------------------------------

    async def run(
        self,
        operation: Callable[[asyncpg.Connection], Awaitable[T]],
        *,
        name: str,
        transaction: bool = True,
    ) -> T:
        """Execute ``operation(conn)`` with retry on transient failures.

        Each attempt acquires a fresh connection (and a fresh transaction
        when ``transaction`` is True), so a broken socket is never reused
        and a failed attempt leaves nothing half-written.

        Args:
            operation: Coroutine function receiving the connection. It may
                run several times and must therefore be idempotent.
            name: Operation label used in log records.
            transaction: Wrap each attempt in a transaction.

        Returns:
            Whatever ``operation`` returns.

        Raises:
            ConnectionPoolError: Transient failures outlasted ``retry.max_attempts``.
            QueryError: A permanent database error occurred.
        """
        attempts = self._config.retry.max_attempts
        for attempt in range(attempts):
            try:
                if transaction:
                    async with self.transaction() as conn:
                        return await operation(conn)
                async with self.acquire() as conn:
                    return await operation(conn)
            except _TRANSIENT_ERRORS as e:
                if attempt + 1 >= attempts:
                    self._logger.error(
                        "operation_failed", operation=name, attempts=attempts, error=str(e)
                    )
                    raise ConnectionPoolError(
                        f"{name} failed after {attempts} attempts: {e}"
                    ) from e
                delay = self._retry_delay(attempt)
                self._logger.warning(
                    "operation_retry",
                    operation=name,
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(delay)
            except asyncpg.PostgresError as e:
                self._logger.error("query_error", operation=name, error=str(e))
                raise QueryError(f"{name} failed: {e}") from e

        raise RuntimeError("unreachable: retry loop exited without result")

    async def fetch(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> list[asyncpg.Record]:
        """Execute a query and return all rows."""

        async def op(conn: asyncpg.Connection) -> list[asyncpg.Record]:
            return cast("list[asyncpg.Record]", await conn.fetch(query, *args, timeout=timeout))

        return await self.run(op, name="fetch", transaction=False)

    async def fetchrow(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> asyncpg.Record | None:
        """Execute a query and return the first row, or None."""

        async def op(conn: asyncpg.Connection) -> asyncpg.Record | None:
            return await conn.fetchrow(query, *args, timeout=timeout)

        return await self.run(op, name="fetchrow", transaction=False)

    async def fetchval(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        """Execute a query and return the first column of the first row."""

        async def op(conn: asyncpg.Connection) -> Any:
            return await conn.fetchval(query, *args, timeout=timeout)

        return await self.run(op, name="fetchval", transaction=False)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:  # noqa: ASYNC109
        """Execute a statement and return its status tag (e.g. ``DELETE 5``)."""

        async def op(conn: asyncpg.Connection) -> str:
            return cast("str", await conn.execute(query, *args, timeout=timeout))

        return await self.run(op, name="execute", transaction=False)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether the pool has an active connection to the database."""
        return self._is_connected

    @property
    def config(self) -> PoolConfig:
        """The pool configuration (read-only)."""
        return self._config

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Pool:
        await self.connect()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        db = self._config.database
        return f"Pool(host={db.host}, database={db.database}, connected={self._is_connected})"
