"""
Abstract base class for long-running relaysync services.

``BaseService[ConfigT]`` provides the standard lifecycle: structured
logging via [Logger][relaysync.core.logger.Logger], graceful shutdown via
``asyncio.Event``, interval-based cycling with
[run_forever()][relaysync.core.base_service.BaseService.run_forever],
a consecutive failure limit, and Prometheus metrics through a
[ServiceMetrics][relaysync.core.metrics.ServiceMetrics] handle.

Services persist operational state through
[Archive.upsert_service_state()][relaysync.core.archive.Archive.upsert_service_state]
rather than in memory, so a restart resumes where the last saved cycle
stopped.

See Also:
    [Archive][relaysync.core.archive.Archive]: Persistence interface
        injected into every service.
    [BaseServiceConfig][relaysync.core.base_service.BaseServiceConfig]: Base
        configuration model for all services.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar, cast

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from .logger import Logger
from .metrics import MetricsConfig, ServiceMetrics
from .yaml import load_yaml


if TYPE_CHECKING:
    from types import TracebackType

    from relaysync.models.constants import ServiceName

    from .archive import Archive


# ---------------------------------------------------------------------------
# Base Configuration
# ---------------------------------------------------------------------------


class BaseServiceConfig(BaseModel):
    """Base configuration shared by all services that run in a loop.

    Subclass this to add service-specific fields.
    """

    interval: float = Field(
        default=300.0,
        ge=60.0,
        description="Seconds between run cycles",
    )
    max_consecutive_failures: int = Field(
        default=5,
        ge=0,
        description="Stop after this many consecutive errors (0 = unlimited)",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus metrics configuration",
    )


ConfigT = TypeVar("ConfigT", bound=BaseServiceConfig)


class BaseService(ABC, Generic[ConfigT]):
    """Abstract base class for all relaysync services.

    Subclasses set ``SERVICE_NAME`` and ``CONFIG_CLASS`` and implement
    [run()][relaysync.core.base_service.BaseService.run].

    Attributes:
        SERVICE_NAME: Unique service identifier used in logging and metrics.
        CONFIG_CLASS: Pydantic model class used by the factory methods.
        _archive: [Archive][relaysync.core.archive.Archive] for all database
            operations.
        _config: Typed service configuration.
        _logger: [Logger][relaysync.core.logger.Logger] named after the service.
        _metrics: [ServiceMetrics][relaysync.core.metrics.ServiceMetrics]
            bound to ``SERVICE_NAME``.
        _shutdown_event: Clear while running; set once shutdown is requested.

    Note:
        The lifecycle pattern is ``async with archive:`` then
        ``async with service:`` then
        [run_forever()][relaysync.core.base_service.BaseService.run_forever]
        (or a single [run()][relaysync.core.base_service.BaseService.run]
        with ``--once``).
    """

    SERVICE_NAME: ClassVar[ServiceName]
    CONFIG_CLASS: ClassVar[type[BaseModel]]

    def __init__(self, archive: Archive, config: ConfigT | None = None) -> None:
        self._archive = archive
        self._config: ConfigT = (
            config if config is not None else cast("ConfigT", self.CONFIG_CLASS())
        )
        self._logger = Logger(self.SERVICE_NAME)
        self._metrics = ServiceMetrics(self.SERVICE_NAME, enabled=self._config.metrics.enabled)
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigT:
        """The typed service configuration (read-only)."""
        return self._config

    @abstractmethod
    async def run(self) -> None:
        """Execute one cycle of the service's main logic.

        Implementations perform a bounded unit of work and return. Long
        work should check
        [is_running][relaysync.core.base_service.BaseService.is_running]
        for early exit.
        """
        ...

    def request_shutdown(self) -> None:
        """Request a graceful shutdown of the service.

        Safe to call from signal handlers: setting an ``asyncio.Event`` is
        atomic with respect to the event loop.
        """
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Whether the service is still active (shutdown not yet requested)."""
        return not self._shutdown_event.is_set()

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        """Wait for either a shutdown signal or a timeout to elapse.

        Returns:
            ``True`` if shutdown was requested during the wait, ``False``
            if the timeout expired.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def run_forever(self) -> None:
        """Run cycles until shutdown or until the failure limit is reached.

        Calls [run()][relaysync.core.base_service.BaseService.run], then
        waits ``config.interval`` seconds with
        [wait()][relaysync.core.base_service.BaseService.wait] so that a
        shutdown request interrupts the sleep immediately.

        Metrics tracked automatically: ``cycles_success``, ``cycles_failed``
        and ``errors_{ExceptionType}`` counters, ``consecutive_failures``
        and ``last_cycle_timestamp`` gauges, and the cycle duration
        histogram.

        ``CancelledError``, ``KeyboardInterrupt`` and ``SystemExit`` always
        propagate without being counted as failures.
        """
        interval = self._config.interval
        max_consecutive_failures = self._config.max_consecutive_failures

        self._metrics.info()
        self._logger.info(
            "run_forever_started",
            interval=interval,
            max_consecutive_failures=max_consecutive_failures,
        )

        consecutive_failures = 0

        while self.is_running:
            cycle_start = time.monotonic()

            try:
                await self.run()

                self._metrics.inc_counter("cycles_success")
                self._metrics.observe_cycle(time.monotonic() - cycle_start)
                self._metrics.set_gauge("last_cycle_timestamp", time.time())
                self._metrics.set_gauge("consecutive_failures", 0)

                consecutive_failures = 0
                self._logger.info("cycle_completed", next_cycle_s=interval)

            except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
                raise

            except Exception as e:  # Intentionally broad: top-level error boundary for run_forever
                consecutive_failures += 1

                self._metrics.inc_counter("cycles_failed")
                self._metrics.set_gauge("consecutive_failures", consecutive_failures)
                self._metrics.inc_counter(f"errors_{type(e).__name__}")

                self._logger.error(
                    "run_cycle_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    consecutive_failures=consecutive_failures,
                )

                if (
                    max_consecutive_failures > 0
                    and consecutive_failures >= max_consecutive_failures
                ):
                    self._logger.critical(
                        "max_consecutive_failures_reached",
                        failures=consecutive_failures,
                        limit=max_consecutive_failures,
                    )
                    break

            if await self.wait(interval):
                break

        self._logger.info("run_forever_stopped")

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, archive: Archive, **kwargs: Any) -> Self:
        """Create a service instance from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path), archive=archive, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], archive: Archive, **kwargs: Any) -> Self:
        """Create a service instance from a configuration dictionary.

        Raises:
            ConfigurationError: If ``data`` fails ``CONFIG_CLASS`` validation.
        """
        try:
            config = cast("ConfigT", cls.CONFIG_CLASS.model_validate(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {cls.SERVICE_NAME} configuration: {e}") from e
        return cls(archive=archive, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        """Mark the service as running on context entry."""
        self._shutdown_event.clear()
        self._logger.info("service_started")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        """Signal shutdown on context exit."""
        self._shutdown_event.set()
        self._logger.info("service_stopped")
