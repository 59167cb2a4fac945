"""Synchronizer service for relaysync.

Copies events from Nostr relays into the archive, resuming each relay from
where the previous cycle left it.

One cycle proceeds as follows:

1. Load the per-relay cursor map with
   [CursorStore.load()][relaysync.services.synchronizer.cursors.CursorStore.load].
2. Select relays through a
   [RelaySelector][relaysync.services.synchronizer.selector.RelaySelector]
   plus the statically configured ones.
3. Build one [SyncTask][relaysync.services.synchronizer.dispatch.SyncTask]
   per relay covering ``[cursor, now)``, where ``now`` is fixed at the start
   of the cycle.
4. Run the tasks through the
   [Dispatcher][relaysync.services.synchronizer.dispatch.Dispatcher]; each
   task splits its range with the
   [WindowScheduler][relaysync.services.synchronizer.windows.WindowScheduler]
   and persists every leaf window as soon as it is complete.
5. Advance the cursor of every relay whose task completed to the newest
   event it persisted, then save the cursor map in a single write, even if
   the cycle failed half way. A relay that returned nothing keeps its cursor.

Note:
    A cursor only moves once every window up to ``now`` has been written.
    The next cycle starts at the newest stored event, so that event is
    fetched again without effect and later arrivals at or after it are not
    missed. An interrupted task simply starts over from the same cursor next
    cycle. Events written before the interruption are inserted again
    without effect.

See Also:
    [SynchronizerConfig][relaysync.services.synchronizer.configs.SynchronizerConfig]:
        Configuration model for networks, filters, windows, concurrency
        and relay overrides.
    [BaseService][relaysync.core.base_service.BaseService]: Abstract base
        class providing ``run_forever()`` and the factory methods.
    [Archive][relaysync.core.archive.Archive]: Database facade used for
        event insertion and cursor storage.

Examples:
    ```python
    from relaysync.core import Archive
    from relaysync.services import Synchronizer

    archive = Archive.from_yaml("config/archive.yaml")
    sync = Synchronizer.from_yaml("config/synchronizer.yaml", archive=archive)

    async with archive:
        async with sync:
            await sync.run_forever()
    ```
"""

from __future__ import annotations

import time
from dataclasses import dataclass, fields
from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar

from relaysync.core.base_service import BaseService
from relaysync.models.constants import ServiceName
from relaysync.models.relay import Relay

from .configs import SynchronizerConfig
from .cursors import CursorStore
from .dispatch import Dispatcher, SyncResult, SyncTask
from .selector import DatabaseRelaySelector, RelaySelector, select_relays


if TYPE_CHECKING:
    from collections.abc import Iterable

    from relaysync.core.archive import Archive


class CyclePhase(StrEnum):
    """Where the synchronizer is in its cycle."""

    IDLE = "idle"
    SELECTING = "selecting"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    PERSISTING = "persisting"
    STATE_SAVED = "state_saved"
    WAITING = "waiting"
    SHUTTING_DOWN = "shutting_down"


@dataclass(slots=True)
class CycleCounters:
    """Per-cycle totals, logged and exported as gauges at the end of a cycle."""

    relays: int = 0
    skipped_relays: int = 0
    synced_relays: int = 0
    failed_relays: int = 0
    events: int = 0
    new_events: int = 0
    invalid_events: int = 0
    out_of_range_events: int = 0
    requests: int = 0
    splits: int = 0
    floor_hits: int = 0
    cursors_advanced: int = 0

    def add(self, result: SyncResult) -> None:
        if result.completed:
            self.synced_relays += 1
        else:
            self.failed_relays += 1
        self.events += result.events
        self.new_events += result.new_events
        self.invalid_events += result.invalid
        self.out_of_range_events += result.out_of_range
        self.requests += result.requests
        self.splits += result.splits
        self.floor_hits += result.floor_hits

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class Synchronizer(BaseService[SynchronizerConfig]):
    """Event synchronization service.

    Args:
        archive: Database facade for events and cursors.
        config: Service configuration; defaults apply when omitted.
        selector: Source of eligible relays. Defaults to
            [DatabaseRelaySelector][relaysync.services.synchronizer.selector.DatabaseRelaySelector].

    See Also:
        [CyclePhase][relaysync.services.synchronizer.service.CyclePhase]:
            Phases reported by [phase][relaysync.services.synchronizer.service.Synchronizer.phase].
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.SYNCHRONIZER
    CONFIG_CLASS: ClassVar[type[SynchronizerConfig]] = SynchronizerConfig

    def __init__(
        self,
        archive: Archive,
        config: SynchronizerConfig | None = None,
        *,
        selector: RelaySelector | None = None,
    ) -> None:
        config = config or SynchronizerConfig()
        super().__init__(archive=archive, config=config)
        self._config: SynchronizerConfig
        self._selector = selector if selector is not None else DatabaseRelaySelector(archive)
        self._cursors = CursorStore(
            archive, config.time_range.lookback_seconds, service_name=self.SERVICE_NAME
        )
        self._phase = CyclePhase.IDLE
        self._dispatcher: Dispatcher | None = None
        self._counters = CycleCounters()
        self._cycles = 0

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def counters(self) -> CycleCounters:
        """Totals of the current or most recent cycle."""
        return self._counters

    @property
    def cursors(self) -> CursorStore:
        return self._cursors

    def _set_phase(self, phase: CyclePhase) -> None:
        # Shutdown is terminal.
        if self._phase == CyclePhase.SHUTTING_DOWN:
            return
        self._phase = phase
        self._logger.debug("phase_changed", phase=phase)

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Execute one synchronization cycle.

        Raises:
            DatabaseError: Loading or saving cursors failed, or maintenance
                failed. Relay and per-task database failures do not escape.
        """
        cycle_start = time.monotonic()
        self._cycles += 1
        self._counters = CycleCounters()
        self._logger.info(
            "cycle_started",
            cycle=self._cycles,
            from_database=self._config.source.from_database,
            overrides=len(self._config.overrides),
        )

        await self._cursors.load()
        try:
            self._set_phase(CyclePhase.SELECTING)
            now = int(time.time())
            relays = await select_relays(self._config, self._selector, now, logger=self._logger)
            tasks = self.build_tasks(relays, now)

            if not tasks:
                self._logger.info("no_relays_to_sync", selected=len(relays))
            elif self.is_running:
                self._logger.info("sync_started", relay_count=len(tasks))
                results = await self.dispatch(tasks)
                self._set_phase(CyclePhase.PERSISTING)
                self.apply_results(results)
        finally:
            await self._cursors.save()
            self._set_phase(CyclePhase.STATE_SAVED)

        await self._maybe_reclaim_orphans()
        self._report(time.monotonic() - cycle_start)

    def build_tasks(self, relays: Iterable[Relay], now: int) -> list[SyncTask]:
        """One task per relay covering ``[cursor, now)``; caught-up relays are skipped."""
        tasks: list[SyncTask] = []
        for relay in relays:
            self._counters.relays += 1
            start = self._cursors.get_cursor(relay.url, now)
            if start >= now:
                self._counters.skipped_relays += 1
                continue
            tasks.append(SyncTask(relay=relay, start=start, end=now))
        return tasks

    async def dispatch(self, tasks: list[SyncTask]) -> list[SyncResult]:
        self._set_phase(CyclePhase.DISPATCHING)
        dispatcher = Dispatcher(self._config, self._archive, logger=self._logger)
        self._dispatcher = dispatcher
        try:
            dispatcher.submit(tasks)
            self._set_phase(CyclePhase.COLLECTING)
            return await dispatcher.collect()
        finally:
            self._dispatcher = None

    def apply_results(self, results: Iterable[SyncResult]) -> int:
        """Fold results into the counters and advance cursors of completed tasks.

        Returns:
            Number of cursors that moved.
        """
        advanced = 0
        for result in results:
            self._counters.add(result)
            if not result.completed or result.cursor is None:
                continue
            if self._cursors.set_cursor(result.relay_url, result.cursor):
                advanced += 1
        self._counters.cursors_advanced += advanced
        return advanced

    async def _maybe_reclaim_orphans(self) -> None:
        maintenance = self._config.maintenance
        if not maintenance.reclaim_orphans or not self.is_running:
            return
        if self._cycles % maintenance.every_cycles != 0:
            return
        counts = await self._archive.reclaim_orphans()
        self._metrics.inc_counter("total_orphan_events_deleted", counts.events)
        self._metrics.inc_counter("total_orphan_metadata_deleted", counts.metadata)

    def _report(self, duration: float) -> None:
        counters = self._counters.as_dict()
        for name, value in counters.items():
            self._metrics.set_gauge(name, value)
        self._metrics.inc_counter("total_events_synced", self._counters.new_events)
        self._metrics.inc_counter("total_events_invalid", self._counters.invalid_events)
        self._metrics.inc_counter("total_window_floor_hits", self._counters.floor_hits)

        self._logger.info("cycle_summary", duration_s=round(duration, 2), **counters)

    # -------------------------------------------------------------------------
    # Cursor administration
    # -------------------------------------------------------------------------

    async def reset_cursors(self, urls: Iterable[str]) -> int:
        """Forget the stored cursors of ``urls`` and save the map.

        The next cycle syncs those relays from the lookback window again.

        Raises:
            ValueError: If a URL is not a valid relay URL.

        Returns:
            Number of cursors removed.
        """
        relays = [Relay(url) for url in urls]
        await self._cursors.load()
        removed = 0
        for relay in relays:
            if self._cursors.reset_cursor(relay.url):
                removed += 1
                self._logger.info("cursor_reset", relay=relay.url)
            else:
                self._logger.info("cursor_not_found", relay=relay.url)
        await self._cursors.save()
        return removed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        self._set_phase(CyclePhase.WAITING)
        return await super().wait(timeout)

    def request_shutdown(self) -> None:
        """Stop admitting relay tasks and give in-flight ones the grace period."""
        if self._phase != CyclePhase.SHUTTING_DOWN:
            self._logger.info("shutdown_requested", phase=self._phase)
        self._phase = CyclePhase.SHUTTING_DOWN
        super().request_shutdown()
        if self._dispatcher is not None:
            self._dispatcher.request_shutdown()
