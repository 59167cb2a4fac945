"""Per-network configuration models.

Each network a relay can live on (clearnet, Tor, I2P, Lokinet) has its own
config class with defaults suited to its latency, so a partial YAML
override such as ``tor.enabled: false`` keeps every other default.

Two timeouts are configured per network:

* ``request_timeout``: longest wait for one request to reach EOSE.
* ``relay_timeout``: deadline for the whole sync of one relay in a cycle.

The network of a relay is detected from its hostname by
[Relay][relaysync.models.relay.Relay].

Examples:
    ```yaml
    networks:
      clearnet:
        request_timeout: 20
      tor:
        enabled: true
        proxy_url: socks5://tor:9050
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from relaysync.models.constants import NetworkType


# =============================================================================
# Network-Specific Configuration Classes
# =============================================================================


class ClearnetConfig(BaseModel):
    """Clearnet relays: direct connections, short timeouts."""

    enabled: bool = True
    proxy_url: str | None = None
    request_timeout: float = Field(default=30.0, ge=5.0, le=120.0)
    relay_timeout: float = Field(default=1800.0, ge=60.0, le=14_400.0)


class TorConfig(BaseModel):
    """Tor (.onion) relays: SOCKS5 proxy required, longer timeouts."""

    enabled: bool = True
    proxy_url: str | None = "socks5://127.0.0.1:9050"
    request_timeout: float = Field(default=60.0, ge=5.0, le=120.0)
    relay_timeout: float = Field(default=3600.0, ge=60.0, le=14_400.0)


class I2pConfig(BaseModel):
    """I2P (.i2p) relays: SOCKS5 proxy required."""

    enabled: bool = False
    proxy_url: str | None = "socks5://127.0.0.1:4447"
    request_timeout: float = Field(default=60.0, ge=5.0, le=120.0)
    relay_timeout: float = Field(default=3600.0, ge=60.0, le=14_400.0)


class LokiConfig(BaseModel):
    """Lokinet (.loki) relays: SOCKS5 proxy required.

    Warning:
        Lokinet is only supported on Linux.
    """

    enabled: bool = False
    proxy_url: str | None = "socks5://127.0.0.1:1080"
    request_timeout: float = Field(default=60.0, ge=5.0, le=120.0)
    relay_timeout: float = Field(default=3600.0, ge=60.0, le=14_400.0)


NetworkTypeConfig = ClearnetConfig | TorConfig | I2pConfig | LokiConfig


# =============================================================================
# Unified Network Configuration
# =============================================================================


class NetworksConfig(BaseModel):
    """Per-network settings with lookup helpers.

    Examples:
        ```python
        config = NetworksConfig(i2p=I2pConfig(enabled=True))
        config.is_enabled(NetworkType.I2P)  # True
        config.get_proxy_url(NetworkType.TOR)  # 'socks5://127.0.0.1:9050'
        config.get_enabled_networks()  # ['clearnet', 'tor', 'i2p']
        ```
    """

    clearnet: ClearnetConfig = Field(default_factory=ClearnetConfig)
    tor: TorConfig = Field(default_factory=TorConfig)
    i2p: I2pConfig = Field(default_factory=I2pConfig)
    loki: LokiConfig = Field(default_factory=LokiConfig)

    def get(self, network: NetworkType) -> NetworkTypeConfig:
        """Config for ``network``; unknown networks fall back to clearnet."""
        return getattr(self, network.value, self.clearnet)

    def get_proxy_url(self, network: NetworkType) -> str | None:
        """SOCKS5 proxy for an enabled overlay network; ``None`` for clearnet."""
        if network == NetworkType.CLEARNET:
            return None
        config = self.get(network)
        return config.proxy_url if config.enabled else None

    def is_enabled(self, network: NetworkType) -> bool:
        return self.get(network).enabled

    def get_enabled_networks(self) -> list[str]:
        """Names of enabled networks, in field order."""
        return [name for name in type(self).model_fields if getattr(self, name).enabled]
