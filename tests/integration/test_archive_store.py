"""Integration tests for Archive writes and cursor persistence on PostgreSQL.

Tests:
- Idempotent event observation inserts
- Content-addressed metadata under concurrent writers
- Orphan reclamation
- Cursor map round trip and external resets
- Relay selection from the relay_metadata_latest view
"""

from __future__ import annotations

import asyncio

import pytest

from relaysync.core.archive import Archive
from relaysync.models import EventRelay, Relay, RelayMetadata
from relaysync.models.metadata import Metadata, MetadataType
from relaysync.services.synchronizer import CursorStore, DatabaseRelaySelector


pytestmark = pytest.mark.integration


RELAY = Relay("wss://relay.example.com", discovered_at=1700000000)
OTHER = Relay("wss://other.example.com", discovered_at=1700000000)


# ============================================================================
# Event observations
# ============================================================================


class TestInsertRecords:
    """Archive.insert_records()."""

    async def test_same_observation_twice_stores_one_row(self, archive: Archive, make_event):
        record = EventRelay(make_event(1700000100), RELAY, seen_at=1700000200)

        first = await archive.insert_records([record])
        second = await archive.insert_records([record])

        assert (first, second) == (1, 0)
        assert await archive.fetchval("SELECT count(*) FROM event") == 1
        assert await archive.fetchval("SELECT count(*) FROM event_relay") == 1
        assert await archive.fetchval("SELECT count(*) FROM relay") == 1

    async def test_same_event_from_two_relays(self, archive: Archive, make_event):
        event = make_event(1700000100)

        await archive.insert_records([EventRelay(event, RELAY), EventRelay(event, OTHER)])

        assert await archive.fetchval("SELECT count(*) FROM event") == 1
        assert await archive.fetchval("SELECT count(*) FROM event_relay") == 2

    async def test_columns_round_trip(self, archive: Archive, make_event):
        event = make_event(1700000100, content="hello\x07", tags=(("t", "nostr"),))
        await archive.insert_records([EventRelay(event, RELAY, seen_at=1700000200)])

        row = await archive.fetchrow("SELECT * FROM event")

        assert row["id"] == bytes.fromhex(event.id)
        assert row["created_at"] == 1700000100
        assert row["tags"] == [["t", "nostr"]]
        assert row["content"] == "hello\x07"

    async def test_concurrent_batches_overlap(self, archive: Archive, make_event):
        events = [make_event(1700000000 + i) for i in range(20)]
        first = [EventRelay(e, RELAY, seen_at=1) for e in events[:15]]
        second = [EventRelay(e, RELAY, seen_at=2) for e in events[5:]]

        counts = await asyncio.gather(
            archive.insert_records(first), archive.insert_records(second)
        )

        assert sum(counts) == 20
        assert await archive.fetchval("SELECT count(*) FROM event_relay") == 20


# ============================================================================
# Metadata
# ============================================================================


class TestInsertMetadata:
    """Archive.insert_metadata()."""

    async def test_concurrent_identical_documents_share_one_row(self, archive: Archive):
        metadata = Metadata(MetadataType.NIP11_INFO, {"name": "relay", "supported_nips": [1]})
        snapshots = [
            RelayMetadata(RELAY, metadata, generated_at=1700000000),
            RelayMetadata(OTHER, metadata, generated_at=1700000000),
            RelayMetadata(RELAY, metadata, generated_at=1700000060),
        ]

        ids = await asyncio.gather(*(archive.insert_metadata(s) for s in snapshots))

        assert set(ids) == {metadata.content_hash}
        assert await archive.fetchval("SELECT count(*) FROM metadata") == 1
        assert await archive.fetchval("SELECT count(*) FROM relay_metadata") == 3

    async def test_same_content_under_two_types(self, archive: Archive):
        data = {"rtt_open": 10}
        await archive.insert_metadata(
            RelayMetadata(RELAY, Metadata(MetadataType.NIP11_INFO, data), generated_at=1)
        )
        await archive.insert_metadata(
            RelayMetadata(RELAY, Metadata(MetadataType.NIP66_RTT, data), generated_at=1)
        )
        assert await archive.fetchval("SELECT count(*) FROM metadata") == 2


class TestReclaimOrphans:
    """Archive.reclaim_orphans()."""

    async def test_unreferenced_rows_removed(self, archive: Archive, make_event):
        kept = make_event(1700000100)
        orphan = make_event(1700000200)
        await archive.insert_records([EventRelay(kept, RELAY), EventRelay(orphan, RELAY)])
        await archive.execute(
            "DELETE FROM event_relay WHERE event_id = $1", bytes.fromhex(orphan.id)
        )
        await archive.execute(
            "INSERT INTO metadata (id, type, data) VALUES ($1, 'nip11_info', '{}'::jsonb)",
            b"\x01" * 32,
        )

        counts = await archive.reclaim_orphans()

        assert (counts.events, counts.metadata) == (1, 1)
        assert await archive.fetchval("SELECT count(*) FROM event") == 1


# ============================================================================
# Cursors
# ============================================================================


class TestCursorPersistence:
    """CursorStore over the service_state table."""

    async def test_round_trip(self, archive: Archive):
        store = CursorStore(archive, lookback_seconds=3600)
        store.set_cursor(RELAY.url, 1700000500)
        await store.save(now=1700000600)

        reloaded = CursorStore(archive, lookback_seconds=3600)
        assert await reloaded.load() == 1
        assert reloaded.get_cursor(RELAY.url, now=1800000000) == 1700000500

    async def test_reset_from_other_process_survives_save(self, archive: Archive):
        store = CursorStore(archive, lookback_seconds=3600)
        store.set_cursor(RELAY.url, 1700000500)
        store.set_cursor(OTHER.url, 1700000500)
        await store.save(now=1)
        await store.load()

        admin = CursorStore(archive, lookback_seconds=3600)
        await admin.load()
        assert admin.reset_cursor(RELAY.url)
        await admin.save(now=2)

        store.set_cursor(OTHER.url, 1700000900)
        await store.save(now=3)

        final = CursorStore(archive, lookback_seconds=3600)
        await final.load()
        assert final.snapshot() == {OTHER.url: 1700000900}


# ============================================================================
# Relay selection
# ============================================================================


class TestDatabaseRelaySelector:
    """DatabaseRelaySelector over the relay_metadata_latest view."""

    async def test_fresh_probes_listed_with_readability(self, archive: Archive):
        readable = Metadata(MetadataType.NIP66_RTT, {"rtt_open": 10, "rtt_read": 20})
        unreadable = Metadata(MetadataType.NIP66_RTT, {"rtt_open": 10})
        await archive.insert_metadata(RelayMetadata(RELAY, readable, generated_at=2000))
        await archive.insert_metadata(RelayMetadata(OTHER, unreadable, generated_at=2000))
        stale = Relay("wss://stale.example.com", discovered_at=1)
        await archive.insert_metadata(RelayMetadata(stale, readable, generated_at=500))
        selector = DatabaseRelaySelector(archive)

        relays = await selector.list_eligible_endpoints(1000)

        assert [r.url for r in relays] == [OTHER.url, RELAY.url]
        assert await selector.is_readable(RELAY)
        assert not await selector.is_readable(OTHER)
