"""
Unit tests for core.archive module.

Tests:
- Configuration models and the from_dict / to_dict round trip
- Column transposition and chunking helpers
- insert_records() batching and new-row counting
- insert_metadata(), reclaim_orphans()
- Service state upsert (last record wins) and lookup
"""

import json
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from relaysync.core.archive import Archive, ArchiveConfig, ArchiveTimeoutsConfig, BatchConfig
from relaysync.core.exceptions import ConfigurationError
from relaysync.models import (
    EventRelay,
    Metadata,
    MetadataType,
    RelayMetadata,
    ServiceName,
    ServiceState,
    ServiceStateType,
)


def _state(key: str, value: dict, updated_at: int = 1700000000) -> ServiceState:
    return ServiceState(
        service_name=ServiceName.SYNCHRONIZER,
        state_type=ServiceStateType.CURSOR,
        state_key=key,
        state_value=value,
        updated_at=updated_at,
    )


class TestArchiveConfig:
    """Configuration models."""

    def test_defaults(self):
        config = ArchiveConfig()
        assert config.batch.max_size == 1000
        assert config.timeouts.query == 60.0

    def test_timeout_none_allowed(self):
        assert ArchiveTimeoutsConfig(query=None).query is None

    def test_timeout_floor(self):
        with pytest.raises(ValidationError, match="Timeout must be None"):
            ArchiveTimeoutsConfig(batch=0.01)

    def test_batch_bounds(self):
        with pytest.raises(ValidationError):
            BatchConfig(max_size=0)


class TestArchiveFactory:
    """from_dict(), to_dict() and repr."""

    def test_from_dict(self, archive_config_dict):
        archive = Archive.from_dict(archive_config_dict)
        assert archive.config.batch.max_size == 250
        assert archive.pool_config.database.database == "test_db"
        assert not archive.is_connected

    def test_from_dict_invalid(self):
        with pytest.raises(ConfigurationError, match="Invalid archive configuration"):
            Archive.from_dict({"batch": {"max_size": -1}})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "archive.yaml"
        path.write_text("pool:\n  database:\n    host: db\nbatch:\n  max_size: 10\n")
        archive = Archive.from_yaml(str(path))
        assert archive.pool_config.database.host == "db"
        assert archive.config.batch.max_size == 10

    def test_to_dict_round_trip(self, archive_config_dict):
        archive = Archive.from_dict(archive_config_dict)
        data = archive.to_dict()
        assert "password" not in data["pool"]["database"]
        rebuilt = Archive.from_dict(data)
        assert rebuilt.config == archive.config
        assert rebuilt.pool_config == archive.pool_config

    def test_to_dict_is_picklable_json(self, archive_config_dict):
        json.dumps(Archive.from_dict(archive_config_dict).to_dict())

    def test_repr(self, mock_archive):
        assert repr(mock_archive) == "Archive(host=localhost, database=test_db, connected=True)"


class TestHelpers:
    """Static helpers."""

    def test_transpose(self):
        assert Archive._transpose_to_columns([(1, "a"), (2, "b")]) == ([1, 2], ["a", "b"])

    def test_transpose_empty(self):
        assert Archive._transpose_to_columns([]) == ()

    def test_transpose_ragged(self):
        with pytest.raises(ValueError, match="Row 1 has 1 columns"):
            Archive._transpose_to_columns([(1, 2), (3,)])

    def test_chunks(self, mock_pool):
        archive = Archive(pool=mock_pool, config=ArchiveConfig(batch=BatchConfig(max_size=2)))
        assert archive._chunks([1, 2, 3, 4, 5]) == [[1, 2], [3, 4], [5]]


class TestInsertRecords:
    """insert_records()."""

    async def test_empty(self, mock_archive, mock_connection):
        assert await mock_archive.insert_records([]) == 0
        mock_connection.execute.assert_not_called()

    async def test_single_chunk(self, mock_archive, mock_connection, make_event, relay_clearnet):
        records = [
            EventRelay(make_event(1700000000 + i), relay_clearnet, seen_at=1700000100)
            for i in range(3)
        ]
        mock_connection.fetchval.return_value = 2

        assert await mock_archive.insert_records(records) == 2

        assert mock_connection.execute.await_count == 2
        relay_args = mock_connection.execute.await_args_list[0].args
        assert relay_args[1:] == (["wss://relay.example.com"], ["clearnet"], [1700000000])
        event_args = mock_connection.fetchval.await_args.args
        assert len(event_args[1]) == 3
        assert event_args[3] == [1700000000, 1700000001, 1700000002]
        link_args = mock_connection.execute.await_args_list[1].args
        assert link_args[2] == ["wss://relay.example.com"] * 3
        assert link_args[3] == [1700000100] * 3

    async def test_chunks_sum(self, mock_pool, mock_connection, make_event, relay_clearnet):
        archive = Archive(pool=mock_pool, config=ArchiveConfig(batch=BatchConfig(max_size=2)))
        records = [EventRelay(make_event(1700000000 + i), relay_clearnet) for i in range(5)]
        mock_connection.fetchval.side_effect = [2, 1, 0]

        assert await archive.insert_records(records) == 3
        assert mock_connection.fetchval.await_count == 3
        assert mock_connection.transaction.call_count == 3

    async def test_null_count(self, mock_archive, mock_connection, sample_event, relay_clearnet):
        mock_connection.fetchval.return_value = None
        assert await mock_archive.insert_records([EventRelay(sample_event, relay_clearnet)]) == 0


class TestInsertMetadata:
    """insert_metadata()."""

    async def test_returns_content_hash(self, mock_archive, mock_connection, relay_clearnet):
        metadata = Metadata(MetadataType.NIP11_INFO, {"name": "relay"})
        snapshot = RelayMetadata(relay_clearnet, metadata, generated_at=1700000000)

        result = await mock_archive.insert_metadata(snapshot)

        assert result == metadata.content_hash
        assert mock_connection.execute.await_count == 3
        metadata_args = mock_connection.execute.await_args_list[1].args
        assert metadata_args[1:] == (metadata.content_hash, "nip11_info", '{"name":"relay"}')


class TestReclaimOrphans:
    """reclaim_orphans()."""

    async def test_counts(self, mock_archive, mock_connection):
        mock_connection.fetchval = AsyncMock(side_effect=[12, 3])
        counts = await mock_archive.reclaim_orphans()
        assert counts.events == 12
        assert counts.metadata == 3


class TestServiceState:
    """upsert_service_state() and get_service_state()."""

    async def test_upsert_empty(self, mock_archive, mock_connection):
        assert await mock_archive.upsert_service_state([]) == 0
        mock_connection.execute.assert_not_called()

    async def test_upsert_last_wins(self, mock_archive, mock_connection):
        records = [
            _state("synchronizer", {"cursor_map": {"wss://a.io": 1}}),
            _state("synchronizer", {"cursor_map": {"wss://a.io": 2}}),
        ]
        assert await mock_archive.upsert_service_state(records) == 1
        args = mock_connection.execute.await_args.args
        assert args[1] == ["synchronizer"]
        assert json.loads(args[4][0]) == {"cursor_map": {"wss://a.io": 2}}

    async def test_get(self, mock_archive, mock_connection):
        mock_connection.fetch.return_value = [
            {
                "service_name": "synchronizer",
                "state_type": "cursor",
                "state_key": "synchronizer",
                "state_value": '{"cursor_map": {"wss://a.io": 5}}',
                "updated_at": 1700000000,
            }
        ]
        rows = await mock_archive.get_service_state("synchronizer", "cursor", "synchronizer")
        assert len(rows) == 1
        assert rows[0].state_value["cursor_map"]["wss://a.io"] == 5
        assert mock_connection.fetch.await_args.args[1:] == (
            "synchronizer",
            "cursor",
            "synchronizer",
        )

    async def test_get_empty(self, mock_archive):
        assert await mock_archive.get_service_state("synchronizer", "cursor") == []


class TestArchiveLifecycle:
    """connect() / close() delegate to the pool."""

    async def test_context_manager(self, mock_pool, mock_asyncpg_pool):
        archive = Archive(pool=mock_pool)
        async with archive:
            assert archive.is_connected
        mock_asyncpg_pool.close.assert_awaited_once()
        assert not archive.is_connected
