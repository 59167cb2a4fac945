"""
One probe observation: a [Metadata][relaysync.models.metadata.Metadata]
document recorded for a [Relay][relaysync.models.relay.Relay] at
``generated_at``.

Observations are cheap rows in ``relay_metadata``; the document itself is
stored once per content hash, so a relay whose NIP-11 document never
changes produces one ``metadata`` row and many observations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import time
from typing import NamedTuple

from ._validation import validate_instance, validate_timestamp
from .metadata import Metadata
from .relay import Relay


class RelayMetadataDbParams(NamedTuple):
    """Relay, metadata and observation columns for one snapshot insert."""

    relay_url: str
    relay_network: str
    relay_discovered_at: int
    metadata_id: bytes
    metadata_type: str
    metadata_data: str
    generated_at: int


@dataclass(frozen=True, slots=True)
class RelayMetadata:
    """Metadata snapshot observed for ``relay`` at ``generated_at``."""

    relay: Relay
    metadata: Metadata
    generated_at: int = field(default_factory=lambda: int(time()))

    def __post_init__(self) -> None:
        validate_instance(self.relay, Relay, "relay")
        validate_instance(self.metadata, Metadata, "metadata")
        validate_timestamp(self.generated_at, "generated_at")

    def to_db_params(self) -> RelayMetadataDbParams:
        relay = self.relay.to_db_params()
        metadata = self.metadata.to_db_params()
        return RelayMetadataDbParams(
            relay_url=relay.url,
            relay_network=relay.network,
            relay_discovered_at=relay.discovered_at,
            metadata_id=metadata.id,
            metadata_type=metadata.type,
            metadata_data=metadata.data,
            generated_at=self.generated_at,
        )
