"""
Content-addressed metadata documents.

A [Metadata][relaysync.models.metadata.Metadata] document is identified by
the SHA-256 digest of its canonical JSON form: keys sorted, compact
separators, UTF-8, with ``None`` values and empty containers removed. Two
documents with the same meaning therefore share one identity no matter how
they were assembled, and the ``metadata`` table stores them once.

The engine does not interpret ``data``; its layout belongs to the probing
service that produced it.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, NamedTuple

from ._validation import deep_freeze, sanitize_data, validate_mapping


class MetadataType(StrEnum):
    """Kinds of probe result the archive stores.

    Attributes:
        NIP11_INFO: NIP-11 relay information document.
        NIP66_RTT: NIP-66 round-trip / readability probe.
    """

    NIP11_INFO = "nip11_info"
    NIP66_RTT = "nip66_rtt"


class MetadataDbParams(NamedTuple):
    """Column values for the ``metadata`` table; ``(id, type)`` is the key."""

    id: bytes
    type: str
    data: str


def to_canonical_json(data: Mapping[str, Any]) -> str:
    """Serialize *data* into its canonical, hash-stable JSON form."""
    return json.dumps(
        sanitize_data(data, "data"),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )


@dataclass(frozen=True, slots=True)
class Metadata:
    """Immutable metadata document with a deterministic content hash.

    The hash covers ``data`` only. ``type`` is part of the storage key, so
    the same bytes filed under two types are two rows.

    Examples:
        ```python
        a = Metadata(MetadataType.NIP11_INFO, {"b": 2, "a": 1})
        b = Metadata(MetadataType.NIP11_INFO, {"a": 1, "b": 2, "c": None})
        a.content_hash == b.content_hash  # True
        ```
    """

    type: MetadataType
    data: Mapping[str, Any] = field(default_factory=dict)
    _canonical_json: str = field(default="", init=False, repr=False, compare=False)
    _content_hash: bytes = field(default=b"", init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", MetadataType(self.type))
        validate_mapping(self.data, "data")
        canonical = to_canonical_json(self.data)
        object.__setattr__(self, "_canonical_json", canonical)
        object.__setattr__(self, "_content_hash", hashlib.sha256(canonical.encode("utf-8")).digest())
        object.__setattr__(self, "data", deep_freeze(json.loads(canonical)))

    @property
    def content_hash(self) -> bytes:
        """32-byte SHA-256 digest of the canonical JSON (the identity)."""
        return self._content_hash

    @property
    def canonical_json(self) -> str:
        return self._canonical_json

    def to_db_params(self) -> MetadataDbParams:
        return MetadataDbParams(id=self._content_hash, type=str(self.type), data=self._canonical_json)
