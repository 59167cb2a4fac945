"""
Pytest configuration and shared fixtures for relaysync tests.

Provides:
- Mock fixtures for asyncpg, Pool and Archive
- Sample data fixtures for relays and events
- Configuration dictionaries for the pool and the archive
"""

from __future__ import annotations

import logging
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from relaysync.core.archive import Archive
from relaysync.core.pool import DatabaseConfig, Pool, PoolConfig
from relaysync.models import Event, Relay


TEST_PASSWORD = "test_password"  # pragma: allowlist secret


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


@pytest.fixture(autouse=True)
def db_password(monkeypatch: pytest.MonkeyPatch) -> str:
    """Every test sees a database password in the environment."""
    monkeypatch.setenv("RELAYSYNC_DB_PASSWORD", TEST_PASSWORD)
    return TEST_PASSWORD


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_connection() -> MagicMock:
    """Create a mock asyncpg connection."""
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=1)
    conn.execute = AsyncMock(return_value="OK")

    mock_transaction = MagicMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=conn)
    mock_transaction.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = MagicMock(return_value=mock_transaction)

    return conn


@pytest.fixture
def mock_asyncpg_pool(mock_connection: MagicMock) -> MagicMock:
    """Create a mock asyncpg pool."""
    pool = MagicMock()
    pool.close = AsyncMock()

    mock_acquire = MagicMock()
    mock_acquire.__aenter__ = AsyncMock(return_value=mock_connection)
    mock_acquire.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = MagicMock(return_value=mock_acquire)

    return pool


@pytest.fixture
def mock_pool(mock_asyncpg_pool: MagicMock, mock_connection: MagicMock) -> Pool:
    """Create a connected Pool with mocked internals."""
    config = PoolConfig(
        database=DatabaseConfig(
            host="localhost",
            port=5432,
            database="test_db",
            user="test_user",
            password=TEST_PASSWORD,
        )
    )
    pool = Pool(config=config)
    pool._pool = mock_asyncpg_pool
    pool._is_connected = True

    # Store mock connection for easy access in tests
    pool._mock_connection = mock_connection  # type: ignore[attr-defined]

    return pool


@pytest.fixture
def mock_archive(mock_pool: Pool) -> Archive:
    """Create an Archive on top of the mocked pool."""
    return Archive(pool=mock_pool)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def pool_config_dict() -> dict[str, Any]:
    """Sample pool configuration dictionary."""
    return {
        "database": {
            "host": "localhost",
            "port": 5432,
            "database": "test_db",
            "user": "test_user",
        },
        "limits": {
            "min_size": 2,
            "max_size": 10,
            "max_queries": 1000,
            "max_inactive_connection_lifetime": 60.0,
        },
        "timeouts": {"acquisition": 5.0},
        "retry": {
            "max_attempts": 2,
            "initial_delay": 0.5,
            "max_delay": 2.0,
            "exponential_backoff": True,
        },
        "server_settings": {
            "application_name": "test_app",
            "timezone": "UTC",
        },
    }


@pytest.fixture
def archive_config_dict(pool_config_dict: dict[str, Any]) -> dict[str, Any]:
    """Sample Archive configuration dictionary."""
    return {
        "pool": pool_config_dict,
        "batch": {"max_size": 250},
        "timeouts": {"query": 30.0, "batch": 90.0, "cleanup": 120.0},
    }


# ============================================================================
# Sample Data Fixtures
# ============================================================================


def build_event(
    created_at: int = 1700000000,
    *,
    kind: int = 1,
    content: str = "Test content",
    tags: tuple[tuple[str, ...], ...] = (("t", "nostr"),),
    pubkey: str = "b" * 64,
) -> Event:
    """Build an event whose id matches its content."""
    draft = Event(
        id="0" * 64,
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=tags,
        content=content,
        sig="e" * 128,
    )
    return Event(
        id=draft.compute_id(),
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=tags,
        content=content,
        sig="e" * 128,
    )


@pytest.fixture
def make_event():
    """Factory for events with valid ids."""
    return build_event


@pytest.fixture
def sample_event() -> Event:
    return build_event()


@pytest.fixture
def relay_clearnet() -> Relay:
    """Standard clearnet wss:// relay."""
    return Relay("wss://relay.example.com", discovered_at=1700000000)


@pytest.fixture
def relay_tor() -> Relay:
    """Tor .onion relay."""
    return Relay(
        "ws://oxtrdevav64z64yb7x6rjg4ntzqjhedm5b5zjqulugknhzr46ny2qbad.onion",
        discovered_at=1700000000,
    )


@pytest.fixture
def relay_i2p() -> Relay:
    """I2P .i2p relay."""
    return Relay("ws://relay.example.i2p", discovered_at=1700000000)
