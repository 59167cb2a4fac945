"""Pure frozen dataclasses with zero I/O for relays, events, and metadata.

The models layer is the bottom of the package DAG. It depends on nothing
else in ``relaysync`` and only on ``rfc3986`` for URL parsing. Every model
uses ``@dataclass(frozen=True, slots=True)`` and validates in
``__post_init__`` so that invalid instances never escape the constructor.
Database parameter containers are ``NamedTuple`` values cached on the
instance.

All models are picklable, which lets sync tasks and results cross process
boundaries in the dispatcher.

Attributes:
    Relay: Normalized relay URL with network and transport detection.
    Event: Validated Nostr event with hex-to-bytes DB conversion.
    EventRelay: Observation of an event on a relay; the unit of persistence.
    Metadata: Content-addressed document keyed by SHA-256 of canonical JSON.
    RelayMetadata: Observation of a metadata document for a relay.
    ServiceState: A ``service_state`` row; used for the cursor map.

See Also:
    [relaysync.core.archive][]: Persists these models.
"""

from .constants import EVENT_KIND_MAX, NetworkType, ServiceName, TransportClass
from .event import Event, EventDbParams
from .event_relay import EventRelay, EventRelayDbParams
from .metadata import Metadata, MetadataDbParams, MetadataType
from .relay import Relay, RelayDbParams
from .relay_metadata import RelayMetadata, RelayMetadataDbParams
from .service_state import ServiceState, ServiceStateDbParams, ServiceStateType


__all__ = [
    "EVENT_KIND_MAX",
    "Event",
    "EventDbParams",
    "EventRelay",
    "EventRelayDbParams",
    "Metadata",
    "MetadataDbParams",
    "MetadataType",
    "NetworkType",
    "Relay",
    "RelayDbParams",
    "RelayMetadata",
    "RelayMetadataDbParams",
    "ServiceName",
    "ServiceState",
    "ServiceStateDbParams",
    "ServiceStateType",
    "TransportClass",
]
