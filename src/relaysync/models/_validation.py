"""Validation helpers for the frozen dataclass models.

Private module. Every helper raises ``TypeError`` for a wrong type and
``ValueError`` for a wrong value, which is what callers catch to skip a
malformed record.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any


_MAX_DEPTH = 50
_HEX = re.compile(r"^[0-9a-f]*$")


def validate_instance(value: Any, expected: type, name: str) -> None:
    if not isinstance(value, expected):
        raise TypeError(f"{name} must be {expected.__name__}, got {type(value).__name__}")


def validate_timestamp(value: Any, name: str) -> None:
    """Require a non-negative ``int`` (``bool`` is rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def validate_text(value: Any, name: str, *, allow_empty: bool = True) -> None:
    """Require a ``str`` without null bytes (PostgreSQL TEXT rejects them)."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError(f"{name} contains null bytes")
    if not allow_empty and not value:
        raise ValueError(f"{name} must not be empty")


def validate_hex(value: Any, length: int, name: str) -> None:
    """Require a lowercase hex string of exactly *length* characters."""
    validate_text(value, name)
    if len(value) != length or not _HEX.match(value):
        raise ValueError(f"{name} must be {length} lowercase hex characters")


def validate_mapping(value: Any, name: str) -> None:
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a Mapping, got {type(value).__name__}")


def sanitize_data(obj: Any, name: str, *, _depth: int = 0) -> Any:
    """Normalize a JSON-like value for deterministic serialization.

    ``None`` values and empty containers are dropped, mapping keys are
    sorted and must be strings, non-finite floats and unsupported types
    collapse to ``None`` (and are then dropped by the parent). Nesting
    deeper than 50 levels is cut off the same way.

    Raises:
        ValueError: If a string or key contains null bytes.
    """
    if _depth > _MAX_DEPTH:
        return None
    if obj is None or isinstance(obj, bool | int):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, str):
        if "\x00" in obj:
            raise ValueError(f"{name} contains null bytes")
        return obj
    if isinstance(obj, Mapping):
        cleaned: dict[str, Any] = {}
        for key in sorted(k for k in obj if isinstance(k, str)):
            if "\x00" in key:
                raise ValueError(f"{name} key contains null bytes")
            value = sanitize_data(obj[key], name, _depth=_depth + 1)
            if not _is_empty(value):
                cleaned[key] = value
        return cleaned
    if isinstance(obj, list | tuple):
        items = (sanitize_data(item, name, _depth=_depth + 1) for item in obj)
        return [item for item in items if not _is_empty(item)]
    return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, dict | list) and not value)


def deep_freeze(obj: Any) -> Any:
    """Recursively wrap dicts in ``MappingProxyType`` and lists in tuples."""
    if isinstance(obj, dict):
        return MappingProxyType({k: deep_freeze(v) for k, v in obj.items()})
    if isinstance(obj, list):
        return tuple(deep_freeze(item) for item in obj)
    return obj
