"""Service state rows for database persistence.

Pure data containers for the ``service_state`` table. The synchronizer
stores its whole cursor map as one row whose ``state_value`` is
``{"cursor_map": {relay_url: timestamp}}``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, NamedTuple

from ._validation import (
    deep_freeze,
    sanitize_data,
    validate_mapping,
    validate_text,
    validate_timestamp,
)
from .constants import ServiceName


class ServiceStateType(StrEnum):
    """Discriminator for ``service_state.state_type``.

    Attributes:
        CURSOR: Position reached in an ordered source (event timestamps).
    """

    CURSOR = "cursor"


class ServiceStateDbParams(NamedTuple):
    """Column values for ``service_state``; the value is pre-serialized JSON."""

    service_name: str
    state_type: str
    state_key: str
    state_value: str
    updated_at: int


@dataclass(frozen=True, slots=True)
class ServiceState:
    """A single ``service_state`` row.

    Attributes:
        service_name: Owning service.
        state_type: Kind of state.
        state_key: Key within the service and type.
        state_value: JSON-compatible mapping.
        updated_at: Unix timestamp of the last write.
    """

    service_name: ServiceName
    state_type: ServiceStateType
    state_key: str
    state_value: Mapping[str, Any]
    updated_at: int
    _json_value: str = field(default="", init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        validate_text(self.state_key, "state_key", allow_empty=False)
        validate_mapping(self.state_value, "state_value")
        validate_timestamp(self.updated_at, "updated_at")
        object.__setattr__(self, "service_name", ServiceName(self.service_name))
        object.__setattr__(self, "state_type", ServiceStateType(self.state_type))
        sanitized = sanitize_data(self.state_value, "state_value")
        object.__setattr__(self, "_json_value", json.dumps(sanitized, sort_keys=True))
        object.__setattr__(self, "state_value", deep_freeze(sanitized))

    def to_db_params(self) -> ServiceStateDbParams:
        return ServiceStateDbParams(
            service_name=str(self.service_name),
            state_type=str(self.state_type),
            state_key=self.state_key,
            state_value=self._json_value,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ServiceState:
        """Rebuild a row read back from the database.

        ``state_value`` may arrive decoded (JSONB codec) or as a JSON string.
        """
        value = row["state_value"]
        if isinstance(value, str):
            value = json.loads(value)
        return cls(
            service_name=row["service_name"],
            state_type=row["state_type"],
            state_key=row["state_key"],
            state_value=value,
            updated_at=row["updated_at"],
        )
