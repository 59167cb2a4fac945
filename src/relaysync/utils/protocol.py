"""Nostr relay client sessions for relaysync.

A [RelaySession][relaysync.utils.protocol.RelaySession] owns one aiohttp
WebSocket connected to exactly one relay, directly or through a SOCKS5
proxy (``aiohttp_socks.ProxyConnector``), and answers bounded historical
queries with [fetch()][relaysync.utils.protocol.RelaySession.fetch].

Each query is one NIP-01 subscription: ``REQ`` goes out, ``EVENT``
messages come back, and the relay sends ``EOSE`` once it has returned
everything it is going to return. Only ``EOSE`` completes a query. A relay
that stops answering surfaces as
[RelayTimeoutError][relaysync.core.exceptions.RelayTimeoutError], and a
relay that refuses the subscription with ``CLOSED`` as
[ProtocolError][relaysync.core.exceptions.ProtocolError]; neither is ever
mistaken for a complete window.

Attributes:
    create_http_session: aiohttp session factory with optional SOCKS5 proxy.
    FetchRequest: Filter fields plus an inclusive ``[since, until]`` range.
    FetchResult: Validated events plus raw and invalid counts.
    RelaySession: Async context manager around one relay connection.
    open_session: Build a session for a relay.

Examples:
    ```python
    async with open_session(relay, proxy_url=None, timeout=30.0) as session:
        result = await session.fetch(FetchRequest(since=0, until=999, limit=500), timeout=30.0)
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp_socks import ProxyConnector, ProxyError

from relaysync.core.exceptions import ConnectivityError, ProtocolError, RelayTimeoutError
from relaysync.models.event import Event


if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from relaysync.models.relay import Relay


logger = logging.getLogger(__name__)

_WS_CLOSE_TIMEOUT = 5.0
_WS_MAX_MSG_SIZE = 16 * 1024 * 1024
_subscription_ids = itertools.count(1)


def create_http_session(proxy_url: str | None = None) -> aiohttp.ClientSession:
    """Create an aiohttp session, optionally routed through a SOCKS5 proxy.

    Args:
        proxy_url: SOCKS5 proxy URL (e.g. ``socks5://127.0.0.1:9050``), or
            ``None`` for a direct connection.

    Note:
        Host names are resolved by the proxy (``rdns=True``), which is the
        only way ``.onion``/``.i2p``/``.loki`` names resolve at all.
    """
    connector: aiohttp.BaseConnector
    if proxy_url is not None:
        connector = ProxyConnector.from_url(proxy_url, rdns=True)
    else:
        connector = aiohttp.TCPConnector()
    return aiohttp.ClientSession(connector=connector)


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchRequest:
    """One historical query: filter fields plus an inclusive time range.

    ``since`` and ``until`` are inclusive, exactly as they go on the wire.
    Empty ``ids``/``kinds``/``authors`` mean "any". ``tags`` maps a single
    lowercase letter to the accepted values.
    """

    since: int
    until: int
    limit: int
    ids: tuple[str, ...] = ()
    kinds: tuple[int, ...] = ()
    authors: tuple[str, ...] = ()
    tags: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.since > self.until:
            raise ValueError(f"since ({self.since}) must be <= until ({self.until})")
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")

    def to_filter(self) -> dict[str, Any]:
        """Build the NIP-01 filter object for this request."""
        f: dict[str, Any] = {"since": self.since, "until": self.until, "limit": self.limit}
        if self.ids:
            f["ids"] = list(self.ids)
        if self.kinds:
            f["kinds"] = list(self.kinds)
        if self.authors:
            f["authors"] = list(self.authors)
        for letter, values in self.tags.items():
            f[f"#{letter}"] = list(values)
        return f


@dataclass(slots=True)
class FetchResult:
    """Outcome of one completed request.

    Attributes:
        events: Events that passed model validation.
        received: Raw number of events the relay sent; compared against the
            request limit to detect a saturated window.
        invalid: Events dropped because they failed validation.
    """

    events: list[Event] = field(default_factory=list)
    received: int = 0
    invalid: int = 0


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class RelaySession:
    """A connection to a single relay, opened on ``__aenter__``.

    Args:
        relay: The relay to connect to.
        proxy_url: SOCKS5 proxy for proxied relays, ``None`` for direct.
        timeout: Connection timeout in seconds.

    Raises:
        ConnectivityError: From ``__aenter__`` if the relay cannot be reached.
        RelayTimeoutError: From ``__aenter__`` or ``fetch`` on timeouts.
    """

    def __init__(self, relay: Relay, proxy_url: str | None, timeout: float) -> None:
        self._relay = relay
        self._proxy_url = proxy_url
        self._timeout = timeout
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def relay(self) -> Relay:
        return self._relay

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        """Connect to the relay.

        Raises:
            ConnectivityError: An overlay relay has no proxy, or the
                connection attempt failed.
            RelayTimeoutError: The attempt did not finish in time.
        """
        if self._ws is not None:
            return
        if self._relay.network.is_overlay and self._proxy_url is None:
            raise ConnectivityError(f"no proxy configured for {self._relay.network} relay")

        http = create_http_session(self._proxy_url)
        try:
            ws = await asyncio.wait_for(
                http.ws_connect(self._relay.url, max_msg_size=_WS_MAX_MSG_SIZE),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            await self._shutdown(None, http)
            raise RelayTimeoutError(f"connect timed out after {self._timeout}s") from e
        except (aiohttp.ClientError, ProxyError, OSError) as e:
            await self._shutdown(None, http)
            raise ConnectivityError(f"connect failed: {e}") from e
        except asyncio.CancelledError:
            await self._shutdown(None, http)
            raise

        self._http, self._ws = http, ws
        logger.debug(
            "relay_connected relay=%s proxied=%s", self._relay.url, self._proxy_url is not None
        )

    async def fetch(self, request: FetchRequest, timeout: float) -> FetchResult:  # noqa: ASYNC109
        """Send one request and wait for EOSE.

        Malformed events are skipped and counted in ``invalid``; they still
        count towards ``received``.

        Raises:
            RuntimeError: If the session is not open.
            RelayTimeoutError: EOSE did not arrive within ``timeout``.
            ProtocolError: The relay closed the subscription.
            ConnectivityError: The connection failed mid-request.
        """
        if self._ws is None:
            raise RuntimeError("Session not open. Use 'async with' or call open() first.")

        sub_id = f"rs{next(_subscription_ids)}"
        try:
            await self._ws.send_str(json.dumps(["REQ", sub_id, request.to_filter()]))
            result = await asyncio.wait_for(self._collect(self._ws, sub_id), timeout=timeout)
        except TimeoutError as e:
            raise RelayTimeoutError(
                f"no EOSE within {timeout:.1f}s for [{request.since}, {request.until}]"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectivityError(f"request failed: {e}") from e

        with contextlib.suppress(aiohttp.ClientError, OSError):
            await self._ws.send_str(json.dumps(["CLOSE", sub_id]))
        return result

    async def _collect(self, ws: aiohttp.ClientWebSocketResponse, sub_id: str) -> FetchResult:
        result = FetchResult()
        while True:
            msg = await ws.receive()
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                    continue
                # CLOSE, CLOSING, CLOSED, ERROR or unexpected binary data
                raise ConnectivityError(f"connection closed ({msg.type.name})")

            try:
                message = json.loads(msg.data)
            except ValueError:
                logger.debug("message_unparsable relay=%s", self._relay.url)
                continue
            if not isinstance(message, list) or not message:
                continue

            verb = message[0]
            if verb == "NOTICE":
                logger.debug("relay_notice relay=%s notice=%s", self._relay.url, message[1:])
                continue
            if len(message) < 2 or message[1] != sub_id:  # noqa: PLR2004
                continue

            if verb == "EOSE":
                return result
            if verb == "CLOSED":
                reason = message[2] if len(message) > 2 else ""  # noqa: PLR2004
                raise ProtocolError(f"subscription closed by relay: {reason}")
            if verb == "EVENT":
                result.received += 1
                payload = message[2] if len(message) > 2 else None  # noqa: PLR2004
                try:
                    result.events.append(Event.from_relay(payload))
                except (ValueError, TypeError, OverflowError) as e:
                    result.invalid += 1
                    logger.debug("event_invalid relay=%s error=%s", self._relay.url, e)

    async def close(self) -> None:
        """Close the WebSocket and its HTTP session. Idempotent."""
        ws, http = self._ws, self._http
        self._ws, self._http = None, None
        if http is not None:
            await self._shutdown(ws, http)

    @staticmethod
    async def _shutdown(
        ws: aiohttp.ClientWebSocketResponse | None, http: aiohttp.ClientSession
    ) -> None:
        # aiohttp and the SOCKS layer can raise arbitrary errors while tearing down.
        if ws is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(ws.close(), timeout=_WS_CLOSE_TIMEOUT)
        with contextlib.suppress(Exception):
            await asyncio.wait_for(http.close(), timeout=_WS_CLOSE_TIMEOUT)

    async def __aenter__(self) -> RelaySession:
        await self.open()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


def open_session(relay: Relay, proxy_url: str | None, timeout: float) -> RelaySession:
    """Return a session for ``relay``; the connection opens on ``async with``."""
    return RelaySession(relay, proxy_url, timeout)
