"""Core layer providing the foundation for relaysync services.

Sits in the middle of the package DAG: depends only on
``relaysync.models`` and is depended upon by ``relaysync.services``.

Attributes:
    Pool: Async PostgreSQL connection pool with retrying units of work.
        See [Pool][relaysync.core.pool.Pool].
    Archive: Deduplicating writer and query facade. Services use
        [Archive][relaysync.core.archive.Archive], never the pool directly.
    BaseService: Abstract generic service with lifecycle management,
        factory methods, and Prometheus metrics integration.
    Logger: Structured logger supporting key=value and JSON output modes.
    MetricsServer: Prometheus ``/metrics`` HTTP endpoint.
    load_yaml: Safe YAML loading with ``yaml.safe_load()``.

Examples:
    ```python
    from relaysync.core import Archive

    archive = Archive.from_yaml("config/archive.yaml")
    async with archive:
        await archive.insert_records([...])
    ```
"""

from .archive import (
    Archive,
    ArchiveConfig,
    ArchiveTimeoutsConfig,
    BatchConfig,
    OrphanCounts,
)
from .base_service import BaseService, BaseServiceConfig, ConfigT
from .exceptions import (
    ConfigurationError,
    ConnectionPoolError,
    ConnectivityError,
    DatabaseError,
    ProtocolError,
    QueryError,
    RelaySyncError,
    RelayTimeoutError,
    WorkerError,
)
from .logger import (
    JsonFormatter,
    Logger,
    StructuredFormatter,
    configure_logging,
    format_kv_pairs,
    logging_settings,
)
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
    MetricsServer,
    ServiceMetrics,
)
from .pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    PoolTimeoutsConfig,
    ServerSettingsConfig,
)
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "Archive",
    "ArchiveConfig",
    "ArchiveTimeoutsConfig",
    "BaseService",
    "BaseServiceConfig",
    "BatchConfig",
    "ConfigT",
    "ConfigurationError",
    "ConnectionPoolError",
    "ConnectivityError",
    "DatabaseConfig",
    "DatabaseError",
    "JsonFormatter",
    "Logger",
    "MetricsConfig",
    "MetricsServer",
    "OrphanCounts",
    "Pool",
    "PoolConfig",
    "PoolLimitsConfig",
    "PoolRetryConfig",
    "PoolTimeoutsConfig",
    "ProtocolError",
    "QueryError",
    "RelaySyncError",
    "RelayTimeoutError",
    "ServerSettingsConfig",
    "ServiceMetrics",
    "StructuredFormatter",
    "WorkerError",
    "configure_logging",
    "format_kv_pairs",
    "load_yaml",
    "logging_settings",
]
