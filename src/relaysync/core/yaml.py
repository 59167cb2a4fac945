"""YAML configuration loading.

Configuration files are parsed with ``yaml.safe_load`` (no arbitrary object
construction) and must contain a mapping at the top level. Every failure is
reported as [ConfigurationError][relaysync.core.exceptions.ConfigurationError]
so the CLI can exit before touching the network.

See Also:
    [Pool.from_yaml()][relaysync.core.pool.Pool.from_yaml],
    [Archive.from_yaml()][relaysync.core.archive.Archive.from_yaml],
    [BaseService.from_yaml()][relaysync.core.base_service.BaseService.from_yaml]:
        Factories that delegate to this function.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


def load_yaml(config_path: str | Path) -> dict[str, Any]:
    """Load and parse a YAML configuration file.

    Args:
        config_path: Path to the YAML file (absolute or relative).

    Returns:
        Parsed configuration. An empty file yields an empty dict.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not valid
            YAML, or its top level is not a mapping.
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{config_path} must contain a mapping, got {type(data).__name__}"
        )
    return data
