"""
Validated relay URL with network and transport detection.

A [Relay][relaysync.models.relay.Relay] is the unit the synchronizer
schedules work for. Construction parses the URL with ``rfc3986``, rejects
anything that cannot be a public WebSocket relay, normalizes it (scheme per
network, default port dropped, duplicate and trailing slashes removed), and
classifies it:

* ``.onion`` / ``.i2p`` / ``.loki`` hosts are overlay networks, served over
  ``ws://`` and reached through a SOCKS5 proxy (``TransportClass.PROXIED``).
* Every other public host is clearnet, served over ``wss://`` and reached
  directly (``TransportClass.DIRECT``).

The normalized ``url`` is the relay's identity everywhere: cursor map key,
``relay.url`` primary key, and override lookup key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import ip_address
from time import time
from typing import ClassVar, NamedTuple

from rfc3986 import uri_reference
from rfc3986.exceptions import UnpermittedComponentError, ValidationError
from rfc3986.validators import Validator

from ._validation import validate_timestamp
from .constants import NetworkType, TransportClass


class RelayDbParams(NamedTuple):
    """Column values for the ``relay`` table."""

    url: str
    network: str
    discovered_at: int


class _ParsedUrl(NamedTuple):
    scheme: str
    host: str
    port: int | None
    path: str | None
    network: NetworkType
    url: str


@dataclass(frozen=True, slots=True)
class Relay:
    """Immutable, normalized relay endpoint.

    Attributes:
        url: Normalized URL including scheme (the relay identity).
        network: Detected [NetworkType][relaysync.models.constants.NetworkType].
        transport: Default [TransportClass][relaysync.models.constants.TransportClass]
            for the network.
        host: Hostname or IP address (IPv6 without brackets).
        port: Explicit non-default port, or ``None``.
        path: Path component, or ``None``.
        discovered_at: Unix timestamp when the relay was first seen.

    Raises:
        ValueError: If the URL is malformed, not ``ws``/``wss``, carries a
            query or fragment, points at a local address, or contains null
            bytes.

    Examples:
        ```python
        Relay("wss://Relay.Example.com:443/").url   # 'wss://relay.example.com'
        Relay("wss://abc.onion").url                 # 'ws://abc.onion'
        Relay("wss://abc.onion").transport           # TransportClass.PROXIED
        ```
    """

    raw_url: str = field(repr=False)
    discovered_at: int = field(default_factory=lambda: int(time()))

    url: str = field(init=False)
    network: NetworkType = field(init=False)
    host: str = field(init=False)
    port: int | None = field(init=False)
    path: str | None = field(init=False)
    _db_params: RelayDbParams = field(
        default=None,  # type: ignore[assignment]
        init=False,
        repr=False,
        compare=False,
        hash=False,
    )

    _DEFAULT_PORTS: ClassVar[dict[str, int]] = {"ws": 80, "wss": 443}
    _OVERLAY_SUFFIXES: ClassVar[dict[str, NetworkType]] = {
        ".onion": NetworkType.TOR,
        ".i2p": NetworkType.I2P,
        ".loki": NetworkType.LOKI,
    }

    def __post_init__(self) -> None:
        if not isinstance(self.raw_url, str):
            raise ValueError(f"Relay URL must be a str, got {type(self.raw_url).__name__}")
        if "\x00" in self.raw_url:
            raise ValueError("Relay URL contains null bytes")
        validate_timestamp(self.discovered_at, "discovered_at")

        parsed = self._parse(self.raw_url)
        if parsed.network == NetworkType.LOCAL:
            raise ValueError(f"Local addresses not allowed: {parsed.host}")
        if parsed.network == NetworkType.UNKNOWN:
            raise ValueError(f"Invalid host: {parsed.host!r}")

        object.__setattr__(self, "url", parsed.url)
        object.__setattr__(self, "network", parsed.network)
        object.__setattr__(self, "host", parsed.host)
        object.__setattr__(self, "port", parsed.port)
        object.__setattr__(self, "path", parsed.path)
        object.__setattr__(
            self,
            "_db_params",
            RelayDbParams(
                url=parsed.url, network=str(parsed.network), discovered_at=self.discovered_at
            ),
        )

    @property
    def scheme(self) -> str:
        return self.url.split("://", 1)[0]

    @property
    def transport(self) -> TransportClass:
        return TransportClass.PROXIED if self.network.is_overlay else TransportClass.DIRECT

    @classmethod
    def detect_network(cls, host: str) -> NetworkType:
        """Classify a hostname.

        Overlay suffixes win; IP literals are ``LOCAL`` unless globally
        routable; plain names need at least one dot and sane labels.
        """
        bare = host.lower().strip("[]")
        if not bare:
            return NetworkType.UNKNOWN

        for suffix, network in cls._OVERLAY_SUFFIXES.items():
            if bare.endswith(suffix):
                return network

        if bare in ("localhost", "localhost.localdomain") or bare.endswith(".local"):
            return NetworkType.LOCAL

        try:
            ip = ip_address(bare)
        except ValueError:
            pass
        else:
            return NetworkType.CLEARNET if ip.is_global else NetworkType.LOCAL

        labels = bare.split(".")
        if len(labels) < 2 or not all(
            label and not label.startswith("-") and not label.endswith("-") for label in labels
        ):
            return NetworkType.UNKNOWN
        return NetworkType.CLEARNET

    @classmethod
    def _parse(cls, raw: str) -> _ParsedUrl:
        uri = uri_reference(raw.strip()).normalize()
        validator = (
            Validator()
            .require_presence_of("scheme", "host")
            .allow_schemes("ws", "wss")
            .check_validity_of("scheme", "host", "port", "path")
        )
        try:
            validator.validate(uri)
        except UnpermittedComponentError:
            raise ValueError("Invalid scheme: must be ws or wss") from None
        except ValidationError as e:
            raise ValueError(f"Invalid URL: {e}") from None

        if uri.query:
            raise ValueError(f"Relay URL must not contain a query string: ?{uri.query}")
        if uri.fragment:
            raise ValueError(f"Relay URL must not contain a fragment: #{uri.fragment}")

        host = uri.host.strip("[]")
        network = cls.detect_network(host)
        scheme = "ws" if network.is_overlay else "wss"

        path = uri.path or ""
        while "//" in path:
            path = path.replace("//", "/")
        path = path.rstrip("/") or None

        port = int(uri.port) if uri.port else None
        if port == cls._DEFAULT_PORTS[scheme]:
            port = None

        netloc = f"[{host}]" if ":" in host else host
        if port is not None:
            netloc = f"{netloc}:{port}"

        return _ParsedUrl(
            scheme=scheme,
            host=host,
            port=port,
            path=path,
            network=network,
            url=f"{scheme}://{netloc}{path or ''}",
        )

    def to_db_params(self) -> RelayDbParams:
        """Return the cached ``relay`` table column values."""
        return self._db_params
