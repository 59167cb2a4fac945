"""
Immutable Nostr event record.

[Event][relaysync.models.event.Event] holds the seven NIP-01 fields as
plain values so that it can be pickled across worker processes and
compared in tests. Relay responses arrive as JSON objects and are converted
with [Event.from_relay()][relaysync.models.event.Event.from_relay], which
also recomputes the NIP-01 id; anything that fails validation raises
``ValueError``/``TypeError`` and is skipped by the caller instead of
aborting the stream.

Schnorr signatures are checked for shape only. The event ``id`` is
content-derived and is the only identity the storage layer relies on.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from ._validation import validate_hex, validate_text, validate_timestamp
from .constants import EVENT_KIND_MAX


# NIP-01 escapes exactly these characters in the id serialization; every
# other character, control characters included, is written verbatim.
_NIP01_ESCAPES = str.maketrans(
    {
        '"': '\\"',
        "\\": "\\\\",
        "\n": "\\n",
        "\r": "\\r",
        "\t": "\\t",
        "\b": "\\b",
        "\f": "\\f",
    }
)


def _quote(text: str) -> str:
    return '"' + text.translate(_NIP01_ESCAPES) + '"'


class EventDbParams(NamedTuple):
    """Column values for the ``event`` table (ids and keys as raw bytes)."""

    id: bytes
    pubkey: bytes
    created_at: int
    kind: int
    tags: str
    content: str
    sig: bytes


@dataclass(frozen=True, slots=True)
class Event:
    """A validated Nostr event.

    Attributes:
        id: 64-char lowercase hex event id.
        pubkey: 64-char lowercase hex author key.
        created_at: Unix timestamp claimed by the author.
        kind: Event kind, ``0..65535``.
        tags: Tag arrays, each a tuple of strings.
        content: Event content.
        sig: 128-char lowercase hex Schnorr signature.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a field has an invalid value or contains null bytes.
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""
    sig: str = field(default="0" * 128, repr=False)
    _db_params: EventDbParams = field(
        default=None,  # type: ignore[assignment]
        init=False,
        repr=False,
        compare=False,
        hash=False,
    )

    def __post_init__(self) -> None:
        validate_hex(self.id, 64, "id")
        validate_hex(self.pubkey, 64, "pubkey")
        validate_hex(self.sig, 128, "sig")
        validate_timestamp(self.created_at, "created_at")
        if isinstance(self.kind, bool) or not isinstance(self.kind, int):
            raise TypeError(f"kind must be an int, got {type(self.kind).__name__}")
        if not 0 <= self.kind <= EVENT_KIND_MAX:
            raise ValueError(f"kind must be within 0..{EVENT_KIND_MAX}, got {self.kind}")
        validate_text(self.content, "content")

        tags = tuple(tuple(tag) for tag in self.tags)
        for tag in tags:
            for value in tag:
                validate_text(value, "tags")
        object.__setattr__(self, "tags", tags)

        object.__setattr__(
            self,
            "_db_params",
            EventDbParams(
                id=bytes.fromhex(self.id),
                pubkey=bytes.fromhex(self.pubkey),
                created_at=self.created_at,
                kind=self.kind,
                tags=json.dumps([list(tag) for tag in tags], ensure_ascii=False),
                content=self.content,
                sig=bytes.fromhex(self.sig),
            ),
        )

    def compute_id(self) -> str:
        """NIP-01 id: SHA-256 of ``[0, pubkey, created_at, kind, tags, content]``."""
        tags = ",".join("[" + ",".join(_quote(value) for value in tag) + "]" for tag in self.tags)
        serialized = (
            f"[0,{_quote(self.pubkey)},{self.created_at},{self.kind},"
            f"[{tags}],{_quote(self.content)}]"
        )
        return hashlib.sha256(serialized.encode()).hexdigest()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Build an event from its NIP-01 JSON object form.

        Raises:
            KeyError: If a required field is missing.
            TypeError: If ``tags`` is not a list of string lists.
        """
        raw_tags = data.get("tags", ())
        if isinstance(raw_tags, str) or not isinstance(raw_tags, Sequence):
            raise TypeError(f"tags must be a list, got {type(raw_tags).__name__}")
        for tag in raw_tags:
            if isinstance(tag, str) or not isinstance(tag, Sequence):
                raise TypeError(f"tag must be a list, got {type(tag).__name__}")
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            created_at=data["created_at"],
            kind=data["kind"],
            tags=tuple(tuple(tag) for tag in raw_tags),
            content=data.get("content", ""),
            sig=data["sig"],
        )

    @classmethod
    def from_relay(cls, data: Any) -> Event:
        """Build an event received from a relay and check its id.

        Raises:
            ValueError: If the id does not match the content, or a field is
                invalid.
            TypeError: If ``data`` is not an object or a field has the wrong
                type.
        """
        if not isinstance(data, dict):
            raise TypeError(f"event must be an object, got {type(data).__name__}")
        try:
            event = cls.from_dict(data)
        except KeyError as e:
            raise ValueError(f"event is missing field {e}") from e
        if event.compute_id() != event.id:
            raise ValueError(f"event id {event.id} does not match its content")
        return event

    def to_db_params(self) -> EventDbParams:
        """Return the cached ``event`` table column values."""
        return self._db_params
