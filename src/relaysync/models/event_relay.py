"""
Observation of an [Event][relaysync.models.event.Event] on a
[Relay][relaysync.models.relay.Relay].

Rows of the ``event_relay`` table are the live association that keeps an
event from being reclaimed as an orphan. The same event seen on two relays
yields two observations and one ``event`` row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import time
from typing import NamedTuple

from ._validation import validate_instance, validate_timestamp
from .event import Event
from .relay import Relay


class EventRelayDbParams(NamedTuple):
    """Event, relay and junction columns in one row for cascade inserts."""

    event_id: bytes
    pubkey: bytes
    created_at: int
    kind: int
    tags: str
    content: str
    sig: bytes
    relay_url: str
    relay_network: str
    relay_discovered_at: int
    seen_at: int


@dataclass(frozen=True, slots=True)
class EventRelay:
    """Event observed on a relay at ``seen_at``."""

    event: Event
    relay: Relay
    seen_at: int = field(default_factory=lambda: int(time()))
    _db_params: EventRelayDbParams = field(
        default=None,  # type: ignore[assignment]
        init=False,
        repr=False,
        compare=False,
        hash=False,
    )

    def __post_init__(self) -> None:
        validate_instance(self.event, Event, "event")
        validate_instance(self.relay, Relay, "relay")
        validate_timestamp(self.seen_at, "seen_at")
        event = self.event.to_db_params()
        relay = self.relay.to_db_params()
        object.__setattr__(
            self,
            "_db_params",
            EventRelayDbParams(
                event_id=event.id,
                pubkey=event.pubkey,
                created_at=event.created_at,
                kind=event.kind,
                tags=event.tags,
                content=event.content,
                sig=event.sig,
                relay_url=relay.url,
                relay_network=relay.network,
                relay_discovered_at=relay.discovered_at,
                seen_at=self.seen_at,
            ),
        )

    def to_db_params(self) -> EventRelayDbParams:
        return self._db_params
