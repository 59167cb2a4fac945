"""Integration fixtures backed by an ephemeral PostgreSQL from testcontainers.

The container is session-scoped; the schema is dropped and recreated for
every test so each one starts from empty tables.
"""

from __future__ import annotations

import asyncpg
import pytest
from pydantic import SecretStr
from testcontainers.postgres import PostgresContainer

from relaysync.core.archive import Archive
from relaysync.core.pool import DatabaseConfig, Pool, PoolConfig, PoolLimitsConfig


# Layout the archive writes into. The probing service owns the real DDL.
SCHEMA = """
CREATE TABLE relay (
    url TEXT PRIMARY KEY,
    network TEXT NOT NULL,
    discovered_at BIGINT NOT NULL
);

CREATE TABLE event (
    id BYTEA PRIMARY KEY,
    pubkey BYTEA NOT NULL,
    created_at BIGINT NOT NULL,
    kind INTEGER NOT NULL,
    tags JSONB NOT NULL,
    content TEXT NOT NULL,
    sig BYTEA NOT NULL
);

CREATE TABLE event_relay (
    event_id BYTEA NOT NULL REFERENCES event (id) ON DELETE CASCADE,
    relay_url TEXT NOT NULL REFERENCES relay (url) ON DELETE CASCADE,
    seen_at BIGINT NOT NULL,
    PRIMARY KEY (event_id, relay_url)
);

CREATE TABLE metadata (
    id BYTEA NOT NULL,
    type TEXT NOT NULL,
    data JSONB NOT NULL,
    PRIMARY KEY (id, type)
);

CREATE TABLE relay_metadata (
    relay_url TEXT NOT NULL REFERENCES relay (url) ON DELETE CASCADE,
    metadata_id BYTEA NOT NULL,
    metadata_type TEXT NOT NULL,
    generated_at BIGINT NOT NULL,
    PRIMARY KEY (relay_url, generated_at, metadata_type),
    FOREIGN KEY (metadata_id, metadata_type) REFERENCES metadata (id, type)
);

CREATE TABLE service_state (
    service_name TEXT NOT NULL,
    state_type TEXT NOT NULL,
    state_key TEXT NOT NULL,
    state_value JSONB NOT NULL,
    updated_at BIGINT NOT NULL,
    PRIMARY KEY (service_name, state_type, state_key)
);

CREATE VIEW relay_metadata_latest AS
SELECT DISTINCT ON (r.url)
    r.url AS relay_url,
    r.discovered_at,
    rm.generated_at AS nip66_rtt_at,
    (m.data ->> 'rtt_read') IS NOT NULL AS is_readable
FROM relay r
JOIN relay_metadata rm ON rm.relay_url = r.url AND rm.metadata_type = 'nip66_rtt'
JOIN metadata m ON m.id = rm.metadata_id AND m.type = rm.metadata_type
ORDER BY r.url, rm.generated_at DESC;
"""


# ---------------------------------------------------------------------------
# Session-scoped container
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pg_container():
    """Spawn an ephemeral PostgreSQL 16 container for the test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        yield pg


@pytest.fixture(scope="session")
def pg_dsn(pg_container: PostgresContainer) -> dict[str, str | int]:
    return {
        "host": pg_container.get_container_host_ip(),
        "port": int(pg_container.get_exposed_port(5432)),
        "database": pg_container.dbname,
        "user": pg_container.username,
        "password": pg_container.password,
    }


# ---------------------------------------------------------------------------
# Function-scoped Archive with fresh schema
# ---------------------------------------------------------------------------


@pytest.fixture
async def archive(pg_dsn: dict[str, str | int]):
    """Connected Archive over a freshly created schema."""
    conn = await asyncpg.connect(
        host=str(pg_dsn["host"]),
        port=int(pg_dsn["port"]),
        database=str(pg_dsn["database"]),
        user=str(pg_dsn["user"]),
        password=str(pg_dsn["password"]),
    )
    try:
        await conn.execute("DROP SCHEMA public CASCADE")
        await conn.execute("CREATE SCHEMA public")
        await conn.execute(SCHEMA)
    finally:
        await conn.close()

    config = PoolConfig(
        database=DatabaseConfig(
            host=str(pg_dsn["host"]),
            port=int(pg_dsn["port"]),
            database=str(pg_dsn["database"]),
            user=str(pg_dsn["user"]),
            password=SecretStr(str(pg_dsn["password"])),
        ),
        limits=PoolLimitsConfig(min_size=2, max_size=4),
    )
    async with Archive(pool=Pool(config=config)) as instance:
        yield instance
