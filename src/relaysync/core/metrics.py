"""
Prometheus metrics collection and HTTP exposition.

Metric objects are module-level singletons registered once in the default
``prometheus_client`` registry. Services never touch them directly: they go
through a [ServiceMetrics][relaysync.core.metrics.ServiceMetrics] handle,
which binds the ``service`` label and turns every call into a no-op when
metrics are disabled.

[MetricsServer][relaysync.core.metrics.MetricsServer] serves the registry
over an aiohttp endpoint for scraping.

Architecture:
    SERVICE_INFO:               Static metadata set once at startup.
    SERVICE_GAUGE:              Point-in-time values (current state).
    SERVICE_COUNTER:            Cumulative totals (monotonically increasing).
    CYCLE_DURATION_SECONDS:     Histogram of cycle latency.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the Prometheus metrics endpoint.

    The endpoint is only started when ``enabled`` is True. Bind ``host`` to
    ``0.0.0.0`` inside containers.
    """

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", pattern=r"^/", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Metric singletons
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "relaysync_service",
    "Service information and metadata",
)

CYCLE_DURATION_SECONDS = Histogram(
    "relaysync_cycle_duration_seconds",
    "Duration of a service cycle in seconds",
    ["service"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
)

# Automatic names (BaseService.run_forever):
#   gauge:   consecutive_failures, last_cycle_timestamp
#   counter: cycles_success, cycles_failed, errors_{type}
SERVICE_GAUGE = Gauge(
    "relaysync_service_gauge",
    "Service gauge values (point-in-time state)",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "relaysync_service_counter",
    "Service counter values (cumulative totals)",
    ["service", "name"],
)


class ServiceMetrics:
    """Metric handle bound to one service name.

    Args:
        service: Value of the ``service`` label.
        enabled: When False every method returns without recording.
    """

    __slots__ = ("_enabled", "_service")

    def __init__(self, service: str, *, enabled: bool) -> None:
        self._service = service
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def info(self, **labels: str) -> None:
        """Publish static service metadata."""
        if self._enabled:
            SERVICE_INFO.info({"service": self._service, **labels})

    def set_gauge(self, name: str, value: float) -> None:
        if self._enabled:
            SERVICE_GAUGE.labels(service=self._service, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        if self._enabled and value:
            SERVICE_COUNTER.labels(service=self._service, name=name).inc(value)

    def observe_cycle(self, seconds: float) -> None:
        if self._enabled:
            CYCLE_DURATION_SECONDS.labels(service=self._service).observe(seconds)


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible endpoint.

    Usable as an async context manager; both ``start()`` and ``stop()`` are
    no-ops when metrics are disabled.

    Example:
        async with MetricsServer(MetricsConfig(enabled=True, port=8001)):
            await service.run_forever()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind the aiohttp server to the configured host and port.

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        self._runner = runner

    async def stop(self) -> None:
        """Stop the HTTP server. Safe to call when it never started."""
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    async def __aenter__(self) -> MetricsServer:
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        """Serve the latest metrics in exposition format."""
        return web.Response(
            body=generate_latest(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )
