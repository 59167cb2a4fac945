"""Unit tests for models.event_relay module."""

import pytest

from relaysync.models import EventRelay


class TestEventRelay:
    """EventRelay junction record."""

    def test_db_params(self, sample_event, relay_clearnet):
        params = EventRelay(sample_event, relay_clearnet, seen_at=1700000500).to_db_params()
        assert params.event_id == bytes.fromhex(sample_event.id)
        assert params.relay_url == "wss://relay.example.com"
        assert params.relay_network == "clearnet"
        assert params.relay_discovered_at == 1700000000
        assert params.seen_at == 1700000500
        assert params.created_at == sample_event.created_at

    def test_seen_at_defaults_to_now(self, sample_event, relay_clearnet):
        assert EventRelay(sample_event, relay_clearnet).seen_at > 1700000000

    def test_rejects_wrong_types(self, sample_event, relay_clearnet):
        with pytest.raises(TypeError):
            EventRelay("event", relay_clearnet)  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            EventRelay(sample_event, "wss://relay.example.com")  # type: ignore[arg-type]

    def test_rejects_negative_seen_at(self, sample_event, relay_clearnet):
        with pytest.raises(ValueError):
            EventRelay(sample_event, relay_clearnet, seen_at=-1)
