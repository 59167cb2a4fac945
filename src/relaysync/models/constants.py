"""Shared constants for the models layer.

Enumerations used by more than one model module live here to avoid
circular imports between models, core and services.
"""

from __future__ import annotations

from enum import StrEnum


EVENT_KIND_MAX = 65_535


class NetworkType(StrEnum):
    """Network a relay URL belongs to, detected from its hostname.

    Attributes:
        CLEARNET: Public internet relay, ``wss://`` required.
        TOR: ``.onion`` hidden service.
        I2P: ``.i2p`` eepsite.
        LOKI: ``.loki`` Lokinet service.
        LOCAL: Private or reserved address (rejected during validation).
        UNKNOWN: Unclassifiable hostname (rejected during validation).
    """

    CLEARNET = "clearnet"
    TOR = "tor"
    I2P = "i2p"
    LOKI = "loki"
    LOCAL = "local"
    UNKNOWN = "unknown"

    @property
    def is_overlay(self) -> bool:
        """True for networks only reachable through a SOCKS5 proxy."""
        return self in (NetworkType.TOR, NetworkType.I2P, NetworkType.LOKI)


class TransportClass(StrEnum):
    """How the engine reaches a relay.

    Overlay relays default to ``PROXIED``, everything else to ``DIRECT``.
    A per-relay override may force either class.
    """

    DIRECT = "direct"
    PROXIED = "proxied"


class ServiceName(StrEnum):
    """Service identifiers used for logging, metrics, and the state key."""

    SYNCHRONIZER = "synchronizer"
