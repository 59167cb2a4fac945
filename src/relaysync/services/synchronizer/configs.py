"""Synchronizer service configuration models.

See Also:
    [Synchronizer][relaysync.services.synchronizer.Synchronizer]: The service
        class that consumes these configurations.
    [BaseServiceConfig][relaysync.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, failure limit and metrics fields.
"""

from __future__ import annotations

from typing import NamedTuple

from pydantic import BaseModel, Field, field_validator, model_validator

from relaysync.core.base_service import BaseServiceConfig
from relaysync.models.constants import EVENT_KIND_MAX, NetworkType, TransportClass
from relaysync.models.relay import Relay
from relaysync.services.common.configs import NetworksConfig


_HEX_STRING_LENGTH = 64


class FilterConfig(BaseModel):
    """Record filter sent with every request.

    ``tags`` maps a single lowercase letter to the accepted values, e.g.
    ``{"t": ["nostr"]}``.
    """

    ids: list[str] | None = Field(default=None, description="Event IDs to sync (None = all)")
    kinds: list[int] | None = Field(default=None, description="Event kinds to sync (None = all)")
    authors: list[str] | None = Field(default=None, description="Authors to sync (None = all)")
    tags: dict[str, list[str]] | None = Field(default=None, description="Tag filters (None = all)")
    limit: int = Field(default=500, ge=1, le=5000, description="Events per request")

    @field_validator("kinds", mode="after")
    @classmethod
    def validate_kinds(cls, v: list[int] | None) -> list[int] | None:
        """Validate that all event kinds are within 0-65535."""
        if v is None:
            return v
        for kind in v:
            if not 0 <= kind <= EVENT_KIND_MAX:
                raise ValueError(f"Event kind {kind} out of valid range (0-{EVENT_KIND_MAX})")
        return v

    @field_validator("ids", "authors", mode="after")
    @classmethod
    def validate_hex_strings(cls, v: list[str] | None) -> list[str] | None:
        """Validate that all entries are 64-character hex strings (lowercased)."""
        if v is None:
            return v
        for hex_str in v:
            if len(hex_str) != _HEX_STRING_LENGTH:
                raise ValueError(
                    f"Invalid hex string length: {len(hex_str)} (expected {_HEX_STRING_LENGTH})"
                )
            try:
                bytes.fromhex(hex_str)
            except ValueError as e:
                raise ValueError(f"Invalid hex string: {hex_str}") from e
        return [h.lower() for h in v]

    @field_validator("tags", mode="after")
    @classmethod
    def validate_tags(cls, v: dict[str, list[str]] | None) -> dict[str, list[str]] | None:
        """Validate that tag keys are single ASCII letters; drop empty value lists."""
        if v is None:
            return v
        for letter in v:
            if len(letter) != 1 or not ("a" <= letter.lower() <= "z"):
                raise ValueError(f"Tag filter key must be a single letter, got {letter!r}")
        return {letter.lower(): values for letter, values in v.items() if values}


class TimeRangeConfig(BaseModel):
    """Where a relay without a stored cursor starts."""

    lookback_seconds: int = Field(
        default=86_400,
        ge=60,
        le=31_536_000,
        description="First-sync lookback in seconds (default: 86400 = 24 hours)",
    )


class WindowsConfig(BaseModel):
    """Range-splitting limits."""

    min_width: int = Field(
        default=1,
        ge=1,
        description="Saturated windows at or below this width (seconds) are not split further",
    )


class ConcurrencyConfig(BaseModel):
    """Execution units and in-flight tasks per unit."""

    max_processes: int = Field(default=1, ge=1, le=32, description="Execution units (P)")
    max_parallel: int = Field(default=10, ge=1, le=100, description="Concurrent tasks per unit (M)")
    stagger_delay: tuple[float, float] = Field(
        default=(0.0, 5.0), description="Random delay range before each task starts (seconds)"
    )
    max_passes: int = Field(
        default=2, ge=1, le=5, description="Dispatch passes; later passes retry crashed units"
    )
    shutdown_grace: float = Field(
        default=30.0, ge=0.0, le=600.0, description="Seconds in-flight work gets after shutdown"
    )

    @field_validator("stagger_delay", mode="after")
    @classmethod
    def validate_stagger_delay(cls, v: tuple[float, float]) -> tuple[float, float]:
        """Ensure 0 <= min <= max."""
        low, high = v
        if low < 0 or high < low:
            raise ValueError(f"stagger_delay must satisfy 0 <= min <= max, got {list(v)}")
        return v


class SourceConfig(BaseModel):
    """Where the list of relays to sync comes from."""

    from_database: bool = Field(default=True, description="Fetch relays from the database")
    require_readable: bool = Field(
        default=True, description="Only sync relays whose last probe found them readable"
    )
    max_metadata_age: int = Field(
        default=43_200,
        ge=0,
        description="Skip relays whose last probe is older than this (seconds)",
    )
    relays: list[str] = Field(default_factory=list, description="Static relay URLs")

    @field_validator("relays", mode="after")
    @classmethod
    def validate_relays(cls, v: list[str]) -> list[str]:
        for url in v:
            Relay(url)
        return v


class RelayOverrideTimeouts(BaseModel):
    """Per-relay timeout overrides (None means use the network default)."""

    request: float | None = Field(default=None, ge=1.0)
    relay: float | None = Field(default=None, ge=1.0)


class RelayOverride(BaseModel):
    """Per-relay configuration overrides (e.g., for high-traffic relays)."""

    url: str
    transport: TransportClass | None = None
    timeouts: RelayOverrideTimeouts = Field(default_factory=RelayOverrideTimeouts)

    @field_validator("url", mode="after")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Normalize so lookups match ``Relay.url``."""
        return Relay(v).url


class MaintenanceConfig(BaseModel):
    """Periodic housekeeping run by the synchronizer."""

    reclaim_orphans: bool = Field(
        default=False, description="Delete events and metadata nothing references"
    )
    every_cycles: int = Field(default=12, ge=1, description="Run maintenance every N cycles")


class RelayTimeouts(NamedTuple):
    """Effective timeouts for one relay."""

    request: float
    relay: float


class SynchronizerConfig(BaseServiceConfig):
    """Synchronizer service configuration.

    See Also:
        [NetworksConfig][relaysync.services.common.configs.NetworksConfig]:
            Per-network timeout and proxy settings.
    """

    networks: NetworksConfig = Field(default_factory=NetworksConfig)
    filter: FilterConfig = Field(default_factory=FilterConfig)
    time_range: TimeRangeConfig = Field(default_factory=TimeRangeConfig)
    windows: WindowsConfig = Field(default_factory=WindowsConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    overrides: list[RelayOverride] = Field(default_factory=list)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)

    @model_validator(mode="after")
    def validate_overrides(self) -> SynchronizerConfig:
        """Reject duplicate override URLs and proxied overrides without a proxy."""
        seen: set[str] = set()
        for override in self.overrides:
            if override.url in seen:
                raise ValueError(f"Duplicate override for {override.url}")
            seen.add(override.url)
            proxied = override.transport == TransportClass.PROXIED
            if proxied and self.networks.tor.proxy_url is None:
                raise ValueError(f"Override for {override.url} is proxied but tor has no proxy_url")
        return self

    def override_for(self, relay: Relay) -> RelayOverride | None:
        for override in self.overrides:
            if override.url == relay.url:
                return override
        return None

    def transport_for(self, relay: Relay) -> TransportClass:
        """Override transport if set, else the relay's network default."""
        override = self.override_for(relay)
        if override is not None and override.transport is not None:
            return override.transport
        return relay.transport

    def proxy_for(self, relay: Relay) -> str | None:
        """SOCKS5 proxy for ``relay``, or ``None`` for a direct connection.

        A clearnet relay forced to ``PROXIED`` goes through the Tor proxy.
        """
        if self.transport_for(relay) == TransportClass.DIRECT:
            return None
        if relay.network.is_overlay:
            return self.networks.get(relay.network).proxy_url
        return self.networks.tor.proxy_url

    def timeouts_for(self, relay: Relay) -> RelayTimeouts:
        """Request and per-relay deadline for ``relay``.

        The tier comes from the relay's network, or from Tor for a
        clearnet relay forced through the proxy; override values win.
        """
        if relay.network.is_overlay:
            tier = self.networks.get(relay.network)
        elif self.transport_for(relay) == TransportClass.PROXIED:
            tier = self.networks.tor
        else:
            tier = self.networks.clearnet

        request, deadline = tier.request_timeout, tier.relay_timeout
        override = self.override_for(relay)
        if override is not None:
            if override.timeouts.request is not None:
                request = override.timeouts.request
            if override.timeouts.relay is not None:
                deadline = override.timeouts.relay
        return RelayTimeouts(request=request, relay=deadline)

    def is_network_enabled(self, network: NetworkType) -> bool:
        return self.networks.is_enabled(network)
