"""
High-level persistence interface for synchronized events and metadata.

[Archive][relaysync.core.archive.Archive] is the only writer in relaysync.
Every write is a unit of work handed to
[Pool.run()][relaysync.core.pool.Pool.run], which retries it on transient
failures, so each one is written to be safely repeatable:

* bulk inserts pass column arrays through ``unnest()`` in a single round
  trip per statement and end in ``ON CONFLICT DO NOTHING``;
* metadata rows are keyed by the SHA-256 of their canonical JSON, so
  concurrent writers racing on the same document converge on one row;
* service state is upserted by its composite key.

Uses composition with [Pool][relaysync.core.pool.Pool] for connection
management and implements an async context manager for the pool lifecycle.
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import partial
from typing import TYPE_CHECKING, Any, NamedTuple

import asyncpg  # noqa: TC002
from pydantic import BaseModel, Field, ValidationError, field_validator

from relaysync.models import ServiceState

from .exceptions import ConfigurationError
from .logger import Logger
from .pool import Pool, PoolConfig
from .yaml import load_yaml


_MIN_TIMEOUT_SECONDS = 0.1  # Floor for all configurable timeouts


if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from relaysync.models import EventRelay, RelayMetadata


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_INSERT_RELAYS = """
INSERT INTO relay (url, network, discovered_at)
SELECT * FROM unnest($1::text[], $2::text[], $3::bigint[])
ON CONFLICT (url) DO NOTHING
"""

_INSERT_EVENTS = """
WITH inserted AS (
    INSERT INTO event (id, pubkey, created_at, kind, tags, content, sig)
    SELECT id, pubkey, created_at, kind, tags::jsonb, content, sig
    FROM unnest(
        $1::bytea[], $2::bytea[], $3::bigint[], $4::integer[],
        $5::text[], $6::text[], $7::bytea[]
    ) AS t(id, pubkey, created_at, kind, tags, content, sig)
    ON CONFLICT (id) DO NOTHING
    RETURNING 1
)
SELECT count(*) FROM inserted
"""

_INSERT_EVENT_RELAYS = """
INSERT INTO event_relay (event_id, relay_url, seen_at)
SELECT * FROM unnest($1::bytea[], $2::text[], $3::bigint[])
ON CONFLICT (event_id, relay_url) DO NOTHING
"""

_INSERT_METADATA = """
INSERT INTO metadata (id, type, data)
VALUES ($1, $2, $3::jsonb)
ON CONFLICT (id, type) DO NOTHING
"""

_INSERT_RELAY_METADATA = """
INSERT INTO relay_metadata (relay_url, metadata_id, metadata_type, generated_at)
VALUES ($1, $2, $3, $4)
ON CONFLICT DO NOTHING
"""

_DELETE_ORPHAN_EVENTS = """
WITH deleted AS (
    DELETE FROM event e
    WHERE NOT EXISTS (SELECT 1 FROM event_relay er WHERE er.event_id = e.id)
    RETURNING 1
)
SELECT count(*) FROM deleted
"""

_DELETE_ORPHAN_METADATA = """
WITH deleted AS (
    DELETE FROM metadata m
    WHERE NOT EXISTS (
        SELECT 1 FROM relay_metadata rm
        WHERE rm.metadata_id = m.id AND rm.metadata_type = m.type
    )
    RETURNING 1
)
SELECT count(*) FROM deleted
"""

_UPSERT_SERVICE_STATE = """
INSERT INTO service_state (service_name, state_type, state_key, state_value, updated_at)
SELECT service_name, state_type, state_key, state_value::jsonb, updated_at
FROM unnest($1::text[], $2::text[], $3::text[], $4::text[], $5::bigint[])
    AS t(service_name, state_type, state_key, state_value, updated_at)
ON CONFLICT (service_name, state_type, state_key)
DO UPDATE SET state_value = EXCLUDED.state_value, updated_at = EXCLUDED.updated_at
"""

_SELECT_SERVICE_STATE = """
SELECT service_name, state_type, state_key, state_value, updated_at
FROM service_state
WHERE service_name = $1 AND state_type = $2 AND ($3::text IS NULL OR state_key = $3)
ORDER BY state_key
"""


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class BatchConfig(BaseModel):
    """Controls the maximum number of records per bulk insert transaction."""

    max_size: int = Field(
        default=1000, ge=1, le=100_000, description="Maximum items per batch operation"
    )


class ArchiveTimeoutsConfig(BaseModel):
    """Statement timeouts for Archive operations (in seconds).

    Each timeout can be None for no limit or a float >= 0.1 seconds.
    """

    query: float | None = Field(default=60.0, description="Query timeout (seconds, None=infinite)")
    batch: float | None = Field(
        default=120.0, description="Batch insert timeout (seconds, None=infinite)"
    )
    cleanup: float | None = Field(
        default=90.0, description="Orphan cleanup timeout (seconds, None=infinite)"
    )

    @field_validator("query", "batch", "cleanup", mode="after")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        """Validate timeout: None (infinite) or >= 0.1 seconds."""
        if v is not None and v < _MIN_TIMEOUT_SECONDS:
            raise ValueError(
                f"Timeout must be None (infinite) or >= {_MIN_TIMEOUT_SECONDS} seconds"
            )
        return v


class ArchiveConfig(BaseModel):
    """Aggregate configuration for the Archive (pool settings live beside it)."""

    batch: BatchConfig = Field(default_factory=BatchConfig)
    timeouts: ArchiveTimeoutsConfig = Field(default_factory=ArchiveTimeoutsConfig)


class OrphanCounts(NamedTuple):
    """Rows removed by [Archive.reclaim_orphans()][relaysync.core.archive.Archive.reclaim_orphans]."""

    events: int
    metadata: int


# ---------------------------------------------------------------------------
# Archive Class
# ---------------------------------------------------------------------------


class Archive:
    """Deduplicating writer and query facade over a [Pool][relaysync.core.pool.Pool].

    Example:
        archive = Archive.from_yaml("config/archive.yaml")

        async with archive:
            relay = Relay("wss://relay.example.com")
            new = await archive.insert_records([EventRelay(event, relay)])
    """

    def __init__(
        self,
        pool: Pool | None = None,
        config: ArchiveConfig | None = None,
    ) -> None:
        """Initialize the archive.

        Args:
            pool: Connection pool for database access. Creates a default
                Pool if not provided.
            config: Batch size and timeout settings.
        """
        self._pool = pool or Pool()
        self._config = config or ArchiveConfig()
        self._logger = Logger("archive")

    @property
    def config(self) -> ArchiveConfig:
        """The Archive configuration (read-only)."""
        return self._config

    @property
    def pool_config(self) -> PoolConfig:
        """Read-only access to the underlying pool configuration."""
        return self._pool.config

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    @classmethod
    def from_yaml(cls, config_path: str) -> Archive:
        """Create an Archive from a YAML configuration file.

        The file holds a ``pool`` key for connection settings and optional
        ``batch``/``timeouts`` keys.
        """
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> Archive:
        """Create an Archive from a configuration dictionary.

        Raises:
            ConfigurationError: If either part of the dictionary fails
                validation or the password variable is unset.
        """
        pool = Pool.from_dict(config_dict.get("pool") or {})
        archive_dict = {k: v for k, v in config_dict.items() if k != "pool"}
        try:
            config = ArchiveConfig.model_validate(archive_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid archive configuration: {e}") from e
        return cls(pool=pool, config=config)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary accepted by ``from_dict``, minus the password.

        Worker processes rebuild their own Archive from this and resolve
        the password from their environment.
        """
        return {
            "pool": self._pool.config.to_portable_dict(),
            **self._config.model_dump(mode="json"),
        }

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def _chunks(self, records: Sequence[Any]) -> list[Sequence[Any]]:
        size = self._config.batch.max_size
        return [records[i : i + size] for i in range(0, len(records), size)]

    @staticmethod
    def _transpose_to_columns(params: Sequence[tuple[Any, ...]]) -> tuple[list[Any], ...]:
        """Transpose rows to columns for array-parameter bulk statements.

        Raises:
            ValueError: If any row has a different number of columns.
        """
        if not params:
            return ()

        expected_len = len(params[0])
        for i, row in enumerate(params):
            if len(row) != expected_len:
                raise ValueError(f"Row {i} has {len(row)} columns, expected {expected_len}")

        return tuple(list(col) for col in zip(*params, strict=True))

    # -------------------------------------------------------------------------
    # Generic Query Facade
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> list[asyncpg.Record]:
        """Execute a query and return all rows (default timeout ``timeouts.query``)."""
        t = timeout if timeout is not None else self._config.timeouts.query
        return await self._pool.fetch(query, *args, timeout=t)

    async def fetchrow(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> asyncpg.Record | None:
        """Execute a query and return the first row."""
        t = timeout if timeout is not None else self._config.timeouts.query
        return await self._pool.fetchrow(query, *args, timeout=t)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:  # noqa: ASYNC109
        """Execute a query and return the first column of the first row."""
        t = timeout if timeout is not None else self._config.timeouts.query
        return await self._pool.fetchval(query, *args, timeout=t)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:  # noqa: ASYNC109
        """Execute a statement and return the command status string."""
        t = timeout if timeout is not None else self._config.timeouts.query
        return await self._pool.execute(query, *args, timeout=t)

    def transaction(self) -> AbstractAsyncContextManager[asyncpg.Connection]:
        """Return a transaction context manager from the pool.

        Example:
            async with archive.transaction() as conn:
                await conn.execute("INSERT INTO ...")
                await conn.execute("DELETE FROM ...")
        """
        return self._pool.transaction()

    # -------------------------------------------------------------------------
    # Insert Operations
    # -------------------------------------------------------------------------

    async def insert_records(self, records: Sequence[EventRelay]) -> int:
        """Persist event observations, creating relays and events as needed.

        Records are split into chunks of ``batch.max_size``; each chunk is
        one retried transaction inserting relays, then events, then
        observations. Re-inserting anything already stored is a no-op.

        Args:
            records: Validated [EventRelay][relaysync.models.event_relay.EventRelay]
                instances.

        Returns:
            Number of new ``event`` rows.

        Raises:
            ConnectionPoolError: Transient failures outlasted the retry budget.
            QueryError: The database rejected a statement.
        """
        if not records:
            return 0

        timeout = self._config.timeouts.batch
        inserted = 0

        for chunk in self._chunks(records):
            params = [record.to_db_params() for record in chunk]
            relays = {
                p.relay_url: (p.relay_url, p.relay_network, p.relay_discovered_at) for p in params
            }
            relay_columns = self._transpose_to_columns(list(relays.values()))
            event_columns = self._transpose_to_columns(
                [
                    (p.event_id, p.pubkey, p.created_at, p.kind, p.tags, p.content, p.sig)
                    for p in params
                ]
            )
            link_columns = self._transpose_to_columns(
                [(p.event_id, p.relay_url, p.seen_at) for p in params]
            )
            inserted += await self._pool.run(
                partial(
                    self._write_records,
                    relay_columns=relay_columns,
                    event_columns=event_columns,
                    link_columns=link_columns,
                    timeout=timeout,
                ),
                name="insert_records",
            )

        self._logger.debug("records_inserted", count=inserted, attempted=len(records))
        return inserted

    @staticmethod
    async def _write_records(
        conn: asyncpg.Connection,
        *,
        relay_columns: tuple[list[Any], ...],
        event_columns: tuple[list[Any], ...],
        link_columns: tuple[list[Any], ...],
        timeout: float | None,  # noqa: ASYNC109
    ) -> int:
        await conn.execute(_INSERT_RELAYS, *relay_columns, timeout=timeout)
        count = await conn.fetchval(_INSERT_EVENTS, *event_columns, timeout=timeout)
        await conn.execute(_INSERT_EVENT_RELAYS, *link_columns, timeout=timeout)
        return int(count or 0)

    async def insert_metadata(self, snapshot: RelayMetadata) -> bytes:
        """Store a metadata observation, deduplicating the document by content.

        The document row is inserted with ``ON CONFLICT (id, type) DO
        NOTHING``, so concurrent callers with identical content all end up
        pointing at the single row the first of them created.

        Returns:
            The document identity (SHA-256 of its canonical JSON).
        """
        p = snapshot.to_db_params()
        timeout = self._config.timeouts.batch

        async def write(conn: asyncpg.Connection) -> None:
            await conn.execute(
                _INSERT_RELAYS,
                [p.relay_url],
                [p.relay_network],
                [p.relay_discovered_at],
                timeout=timeout,
            )
            await conn.execute(
                _INSERT_METADATA, p.metadata_id, p.metadata_type, p.metadata_data, timeout=timeout
            )
            await conn.execute(
                _INSERT_RELAY_METADATA,
                p.relay_url,
                p.metadata_id,
                p.metadata_type,
                p.generated_at,
                timeout=timeout,
            )

        await self._pool.run(write, name="insert_metadata")
        self._logger.debug(
            "metadata_inserted", relay=p.relay_url, type=p.metadata_type, id=p.metadata_id.hex()
        )
        return p.metadata_id

    # -------------------------------------------------------------------------
    # Cleanup Operations
    # -------------------------------------------------------------------------

    async def reclaim_orphans(self) -> OrphanCounts:
        """Delete events without observations and metadata without snapshots.

        Returns:
            Number of rows removed from each table.
        """
        timeout = self._config.timeouts.cleanup

        async def delete(conn: asyncpg.Connection) -> OrphanCounts:
            events = await conn.fetchval(_DELETE_ORPHAN_EVENTS, timeout=timeout)
            metadata = await conn.fetchval(_DELETE_ORPHAN_METADATA, timeout=timeout)
            return OrphanCounts(events=int(events or 0), metadata=int(metadata or 0))

        counts = await self._pool.run(delete, name="reclaim_orphans")
        self._logger.info("orphans_reclaimed", events=counts.events, metadata=counts.metadata)
        return counts

    # -------------------------------------------------------------------------
    # Service State Operations
    # -------------------------------------------------------------------------

    async def upsert_service_state(self, records: Sequence[ServiceState]) -> int:
        """Insert or replace service state rows by their composite key.

        When the same key appears more than once the last record wins.

        Returns:
            Number of distinct rows written.
        """
        if not records:
            return 0

        by_key = {(r.service_name, r.state_type, r.state_key): r.to_db_params() for r in records}
        columns = self._transpose_to_columns(list(by_key.values()))
        timeout = self._config.timeouts.batch

        async def write(conn: asyncpg.Connection) -> None:
            await conn.execute(_UPSERT_SERVICE_STATE, *columns, timeout=timeout)

        await self._pool.run(write, name="upsert_service_state")
        self._logger.debug("service_state_upserted", count=len(by_key))
        return len(by_key)

    async def get_service_state(
        self,
        service_name: str,
        state_type: str,
        key: str | None = None,
    ) -> list[ServiceState]:
        """Retrieve persisted service state rows.

        Args:
            service_name: Owning service name.
            state_type: Category of state (e.g. ``"cursor"``).
            key: Specific state key, or None for every key of the type.
        """
        rows = await self._pool.fetch(
            _SELECT_SERVICE_STATE,
            str(service_name),
            str(state_type),
            key,
            timeout=self._config.timeouts.query,
        )
        return [ServiceState.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect the underlying pool. Idempotent."""
        await self._pool.connect()

    async def close(self) -> None:
        """Close the underlying pool. Idempotent."""
        await self._pool.close()

    async def __aenter__(self) -> Archive:
        await self.connect()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        db = self._pool.config.database
        return f"Archive(host={db.host}, database={db.database}, connected={self._pool.is_connected})"
