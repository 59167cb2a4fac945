"""
Unit tests for utils.protocol module.

Tests:
- FetchRequest validation and NIP-01 filter construction
- create_http_session() connector selection
- RelaySession.open() error mapping and proxy requirement
- RelaySession.fetch(): EOSE completion, CLOSED, timeouts, invalid events
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from aiohttp_socks import ProxyConnector

from relaysync.core.exceptions import ConnectivityError, ProtocolError, RelayTimeoutError
from relaysync.utils.protocol import (
    FetchRequest,
    FetchResult,
    RelaySession,
    create_http_session,
    open_session,
)


def _text(payload) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload))


def _wire(event) -> dict:
    return {
        "id": event.id,
        "pubkey": event.pubkey,
        "created_at": event.created_at,
        "kind": event.kind,
        "tags": [list(tag) for tag in event.tags],
        "content": event.content,
        "sig": event.sig,
    }


class FakeWebSocket:
    """Scripted WebSocket: ``script(sub_id)`` returns the frames sent after a REQ."""

    def __init__(self, script=None):
        self._script = script or (lambda sub_id: [_text(["EOSE", sub_id])])
        self._frames: list = []
        self.sent: list = []
        self.closed = False
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self):
        self.closed = True

    async def send_str(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if message[0] == "REQ":
            self._frames = list(self._script(message[1]))

    async def receive(self):
        if not self._frames:
            await asyncio.sleep(3600)
        return self._frames.pop(0)


def _open_session(relay, ws: FakeWebSocket) -> RelaySession:
    session = RelaySession(relay, proxy_url=None, timeout=5.0)
    session._ws = ws
    session._http = MagicMock(close=AsyncMock())
    return session


REQUEST = FetchRequest(since=100, until=199, limit=3)


# ============================================================================
# FetchRequest
# ============================================================================


class TestFetchRequest:
    """FetchRequest validation and filter building."""

    def test_minimal_filter(self):
        assert REQUEST.to_filter() == {"since": 100, "until": 199, "limit": 3}

    def test_full_filter(self):
        request = FetchRequest(
            since=0,
            until=10,
            limit=500,
            ids=("a" * 64,),
            kinds=(1, 7),
            authors=("b" * 64,),
            tags={"t": ("nostr", "bitcoin"), "p": ("c" * 64,)},
        )
        assert request.to_filter() == {
            "since": 0,
            "until": 10,
            "limit": 500,
            "ids": ["a" * 64],
            "kinds": [1, 7],
            "authors": ["b" * 64],
            "#t": ["nostr", "bitcoin"],
            "#p": ["c" * 64],
        }

    def test_single_second(self):
        assert FetchRequest(since=5, until=5, limit=1).to_filter()["until"] == 5

    def test_inverted_range(self):
        with pytest.raises(ValueError, match="since"):
            FetchRequest(since=10, until=9, limit=1)

    def test_limit_positive(self):
        with pytest.raises(ValueError, match="limit"):
            FetchRequest(since=0, until=1, limit=0)


# ============================================================================
# Session setup
# ============================================================================


class TestCreateHttpSession:
    """create_http_session() connector selection."""

    async def test_direct(self):
        session = create_http_session()
        try:
            assert not isinstance(session.connector, ProxyConnector)
        finally:
            await session.close()

    async def test_proxied(self):
        session = create_http_session("socks5://127.0.0.1:9050")
        try:
            assert isinstance(session.connector, ProxyConnector)
        finally:
            await session.close()


class TestOpen:
    """RelaySession.open()."""

    async def test_connects(self, relay_clearnet):
        ws = FakeWebSocket()
        http = MagicMock(ws_connect=AsyncMock(return_value=ws), close=AsyncMock())
        with patch("relaysync.utils.protocol.create_http_session", return_value=http) as factory:
            async with open_session(relay_clearnet, None, 5.0) as session:
                assert session.is_open
                assert session.relay is relay_clearnet
        factory.assert_called_once_with(None)
        assert http.ws_connect.await_args.args == ("wss://relay.example.com",)
        ws.close.assert_awaited_once()
        http.close.assert_awaited_once()
        assert not session.is_open

    async def test_proxied_connect(self, relay_tor):
        http = MagicMock(ws_connect=AsyncMock(return_value=FakeWebSocket()), close=AsyncMock())
        with patch("relaysync.utils.protocol.create_http_session", return_value=http) as factory:
            async with open_session(relay_tor, "socks5://tor:9050", 5.0):
                pass
        factory.assert_called_once_with("socks5://tor:9050")

    async def test_overlay_without_proxy(self, relay_tor):
        with (
            patch("relaysync.utils.protocol.create_http_session") as factory,
            pytest.raises(ConnectivityError, match="no proxy"),
        ):
            await RelaySession(relay_tor, None, 5.0).open()
        factory.assert_not_called()

    async def test_connection_refused(self, relay_clearnet):
        http = MagicMock(
            ws_connect=AsyncMock(side_effect=aiohttp.ClientConnectionError("refused")),
            close=AsyncMock(),
        )
        session = RelaySession(relay_clearnet, None, 5.0)
        with (
            patch("relaysync.utils.protocol.create_http_session", return_value=http),
            pytest.raises(ConnectivityError, match="connect failed"),
        ):
            await session.open()
        http.close.assert_awaited_once()
        assert not session.is_open

    async def test_connect_timeout(self, relay_clearnet):
        async def hang(*_args, **_kwargs):
            await asyncio.sleep(3600)

        http = MagicMock(ws_connect=MagicMock(side_effect=hang), close=AsyncMock())
        session = RelaySession(relay_clearnet, None, 0.01)
        with (
            patch("relaysync.utils.protocol.create_http_session", return_value=http),
            pytest.raises(RelayTimeoutError, match="connect timed out"),
        ):
            await session.open()
        http.close.assert_awaited_once()

    async def test_close_idempotent(self, relay_clearnet):
        session = _open_session(relay_clearnet, FakeWebSocket())
        await session.close()
        await session.close()
        assert not session.is_open


# ============================================================================
# fetch()
# ============================================================================


class TestFetch:
    """RelaySession.fetch()."""

    async def test_requires_open_session(self, relay_clearnet):
        with pytest.raises(RuntimeError, match="not open"):
            await RelaySession(relay_clearnet, None, 5.0).fetch(REQUEST, 1.0)

    async def test_events_until_eose(self, relay_clearnet, make_event):
        events = [make_event(100), make_event(150)]

        def script(sub_id):
            return [
                *(_text(["EVENT", sub_id, _wire(e)]) for e in events),
                _text(["EOSE", sub_id]),
            ]

        ws = FakeWebSocket(script)
        result = await _open_session(relay_clearnet, ws).fetch(REQUEST, 1.0)

        assert isinstance(result, FetchResult)
        assert result.events == events
        assert result.received == 2
        assert result.invalid == 0
        req, close = ws.sent
        assert req[0] == "REQ"
        assert req[2] == {"since": 100, "until": 199, "limit": 3}
        assert close == ["CLOSE", req[1]]

    async def test_empty_window(self, relay_clearnet):
        result = await _open_session(relay_clearnet, FakeWebSocket()).fetch(REQUEST, 1.0)
        assert result.events == []
        assert result.received == 0

    async def test_invalid_events_counted(self, relay_clearnet, make_event):
        good = make_event(120)
        tampered = {**_wire(make_event(130)), "content": "changed"}

        def script(sub_id):
            return [
                _text(["EVENT", sub_id, _wire(good)]),
                _text(["EVENT", sub_id, tampered]),
                _text(["EVENT", sub_id, "not an event"]),
                _text(["EVENT", sub_id]),
                _text(["EOSE", sub_id]),
            ]

        result = await _open_session(relay_clearnet, FakeWebSocket(script)).fetch(REQUEST, 1.0)
        assert result.events == [good]
        assert result.received == 4
        assert result.invalid == 3

    async def test_ignores_noise(self, relay_clearnet, make_event):
        event = make_event(110)

        def script(sub_id):
            return [
                SimpleNamespace(type=aiohttp.WSMsgType.PING, data=b""),
                SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="{not json"),
                _text({"not": "a list"}),
                _text(["NOTICE", "slow down"]),
                _text(["EVENT", "other-sub", _wire(event)]),
                _text(["EOSE", "other-sub"]),
                _text(["EVENT", sub_id, _wire(event)]),
                _text(["EOSE", sub_id]),
            ]

        result = await _open_session(relay_clearnet, FakeWebSocket(script)).fetch(REQUEST, 1.0)
        assert result.events == [event]
        assert result.received == 1

    async def test_closed_by_relay(self, relay_clearnet):
        def script(sub_id):
            return [_text(["CLOSED", sub_id, "rate-limited: slow down"])]

        session = _open_session(relay_clearnet, FakeWebSocket(script))
        with pytest.raises(ProtocolError, match="rate-limited"):
            await session.fetch(REQUEST, 1.0)

    async def test_no_eose_times_out(self, relay_clearnet, make_event):
        def script(sub_id):
            return [_text(["EVENT", sub_id, _wire(make_event(100))])]

        session = _open_session(relay_clearnet, FakeWebSocket(script))
        with pytest.raises(RelayTimeoutError, match="no EOSE"):
            await session.fetch(REQUEST, 0.05)

    async def test_connection_dropped(self, relay_clearnet):
        def script(_sub_id):
            return [SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None)]

        session = _open_session(relay_clearnet, FakeWebSocket(script))
        with pytest.raises(ConnectivityError, match="connection closed"):
            await session.fetch(REQUEST, 1.0)

    async def test_send_failure(self, relay_clearnet):
        ws = FakeWebSocket()
        ws.send_str = AsyncMock(side_effect=aiohttp.ClientConnectionError("reset"))
        with pytest.raises(ConnectivityError, match="request failed"):
            await _open_session(relay_clearnet, ws).fetch(REQUEST, 1.0)

    async def test_subscription_ids_unique(self, relay_clearnet):
        ws = FakeWebSocket()
        session = _open_session(relay_clearnet, ws)
        await session.fetch(REQUEST, 1.0)
        await session.fetch(REQUEST, 1.0)
        req_ids = [message[1] for message in ws.sent if message[0] == "REQ"]
        assert len(set(req_ids)) == 2
