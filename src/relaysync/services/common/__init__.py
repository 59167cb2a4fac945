"""Shared infrastructure for relaysync services.

Attributes:
    configs: Per-network Pydantic configuration models
        ([ClearnetConfig][relaysync.services.common.configs.ClearnetConfig],
        [TorConfig][relaysync.services.common.configs.TorConfig],
        [I2pConfig][relaysync.services.common.configs.I2pConfig],
        [LokiConfig][relaysync.services.common.configs.LokiConfig]) with
        defaults for proxies and timeout tiers.
"""

from .configs import (
    ClearnetConfig,
    I2pConfig,
    LokiConfig,
    NetworksConfig,
    NetworkTypeConfig,
    TorConfig,
)


__all__ = [
    "ClearnetConfig",
    "I2pConfig",
    "LokiConfig",
    "NetworkTypeConfig",
    "NetworksConfig",
    "TorConfig",
]
