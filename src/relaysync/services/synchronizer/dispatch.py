"""Task dispatch across execution units.

A cycle produces one [SyncTask][relaysync.services.synchronizer.dispatch.SyncTask]
per relay. The [Dispatcher][relaysync.services.synchronizer.dispatch.Dispatcher]
shuffles them, deals them round-robin to ``concurrency.max_processes``
units and runs at most ``concurrency.max_parallel`` tasks at a time in each
unit, so no more than ``P * M`` relays are being synced at once.

With a single unit everything runs in the caller's event loop and shares
its [Archive][relaysync.core.archive.Archive]. With more than one, every
unit is an ``aiomultiprocess.Worker`` process that rebuilds the service
config and its own Archive from plain dictionaries. The database password
is never pickled; each process reads it from its environment.

A unit that dies without handing back a result list has its tasks
requeued for the next pass, up to ``concurrency.max_passes``. Syncing a
relay twice is harmless because every insert is idempotent.

Every task turns its own failures into a failed
[SyncResult][relaysync.services.synchronizer.dispatch.SyncResult]; the
cursor for that relay does not move. A completed task moves the cursor to
the newest event it persisted, so the next cycle resumes from there.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import random
import signal
import time
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import aiomultiprocess

from relaysync.core.archive import Archive
from relaysync.core.exceptions import RelaySyncError, WorkerError
from relaysync.core.logger import Logger, configure_logging, logging_settings
from relaysync.models.event_relay import EventRelay
from relaysync.models.relay import Relay
from relaysync.utils.protocol import FetchRequest, open_session

from .configs import FilterConfig, SynchronizerConfig
from .windows import Deadline, TimeWindow, WindowScheduler, WindowStats


# Seconds before the parent's grace period ends at which a worker cancels
# its in-flight tasks.
WORKER_CANCEL_MARGIN = 2.0


def worker_cancel_delay(grace: float) -> float:
    """Seconds a worker waits after SIGINT before cancelling its tasks."""
    return max(grace - WORKER_CANCEL_MARGIN, grace / 2)


if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


# ---------------------------------------------------------------------------
# Tasks and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SyncTask:
    """Sync ``relay`` over ``[start, end)`` on execution unit ``unit``."""

    relay: Relay
    start: int
    end: int
    unit: int = 0


@dataclass(slots=True)
class SyncResult:
    """Outcome of one [SyncTask][relaysync.services.synchronizer.dispatch.SyncTask].

    Crosses process boundaries, so it holds only plain values.

    Attributes:
        relay_url: Relay the task synced.
        start: Window start the task was given.
        end: Window end the task was given.
        completed: Every leaf window up to ``end`` was persisted.
        cursor: Newest ``created_at`` persisted by a completed task; ``None``
            when the task failed or the range held no events.
        events: In-range events handed to the archive.
        new_events: Events that were not stored before.
        error: ``"ErrorType: message"`` for failed tasks.
        duration: Wall-clock seconds spent on the task.
    """

    relay_url: str
    start: int
    end: int
    completed: bool = False
    cursor: int | None = None
    events: int = 0
    new_events: int = 0
    requests: int = 0
    splits: int = 0
    floor_hits: int = 0
    received: int = 0
    invalid: int = 0
    out_of_range: int = 0
    error: str | None = None
    duration: float = 0.0

    @classmethod
    def failed(cls, task: SyncTask, error: str) -> SyncResult:
        return cls(relay_url=task.relay.url, start=task.start, end=task.end, error=error)

    def add_stats(self, stats: WindowStats) -> None:
        self.requests = stats.requests
        self.splits = stats.splits
        self.floor_hits = stats.floor_hits
        self.received = stats.received
        self.invalid = stats.invalid
        self.out_of_range = stats.out_of_range


def build_request_template(config: FilterConfig) -> FetchRequest:
    """Request carrying the configured filter; the range is set per window."""
    return FetchRequest(
        since=0,
        until=0,
        limit=config.limit,
        ids=tuple(config.ids or ()),
        kinds=tuple(config.kinds or ()),
        authors=tuple(config.authors or ()),
        tags={letter: tuple(values) for letter, values in (config.tags or {}).items()},
    )


# ---------------------------------------------------------------------------
# Single relay
# ---------------------------------------------------------------------------


async def sync_relay(
    task: SyncTask,
    config: SynchronizerConfig,
    archive: Archive,
    template: FetchRequest,
    logger: Logger,
) -> SyncResult:
    """Fetch and persist everything ``task.relay`` holds in ``[start, end)``.

    Each leaf window is written before the next request goes out. Relay,
    timeout and database errors end the task with ``completed=False``;
    cancellation propagates.
    """
    relay = task.relay
    log = logger.bind(relay=relay.url)
    result = SyncResult(relay_url=relay.url, start=task.start, end=task.end)
    timeouts = config.timeouts_for(relay)
    deadline = Deadline.after(timeouts.relay)
    started = time.monotonic()
    scheduler: WindowScheduler | None = None
    newest: int | None = None

    try:
        connect_timeout = min(timeouts.request, deadline.remaining())
        async with open_session(relay, config.proxy_for(relay), connect_timeout) as session:
            scheduler = WindowScheduler(
                session,
                template,
                request_timeout=timeouts.request,
                deadline=deadline,
                min_width=config.windows.min_width,
                logger=log,
            )
            window = TimeWindow(task.start, task.end)
            async with aclosing(scheduler.iter_leaves(window)) as leaves:
                async for leaf in leaves:
                    if not leaf.events:
                        continue
                    seen_at = int(time.time())
                    records = [EventRelay(e, relay, seen_at=seen_at) for e in leaf.events]
                    result.new_events += await archive.insert_records(records)
                    result.events += len(records)
                    leaf_newest = max(e.created_at for e in leaf.events)
                    newest = leaf_newest if newest is None else max(newest, leaf_newest)

        result.completed = True
        result.cursor = newest

    except (RelaySyncError, OSError, TimeoutError) as e:
        result.error = f"{type(e).__name__}: {e}"
        log.warning("relay_sync_failed", error=str(e), error_type=type(e).__name__)

    finally:
        if scheduler is not None:
            result.add_stats(scheduler.stats)
        result.duration = round(time.monotonic() - started, 3)

    if result.completed:
        log.debug(
            "relay_synced",
            events=result.events,
            new_events=result.new_events,
            requests=result.requests,
            splits=result.splits,
        )
    return result


# ---------------------------------------------------------------------------
# Execution unit
# ---------------------------------------------------------------------------


class UnitRunner:
    """Runs one unit's tasks in the current event loop, ``max_parallel`` at a time.

    [stop()][relaysync.services.synchronizer.dispatch.UnitRunner.stop]
    stops admitting tasks; tasks already running are left alone until
    [cancel()][relaysync.services.synchronizer.dispatch.UnitRunner.cancel].
    [shutdown()][relaysync.services.synchronizer.dispatch.UnitRunner.shutdown]
    does both, the second after a delay.
    """

    def __init__(
        self,
        config: SynchronizerConfig,
        archive: Archive,
        *,
        unit: int = 0,
        logger: Logger | None = None,
    ) -> None:
        self._config = config
        self._archive = archive
        self._unit = unit
        self._logger = (logger or Logger("synchronizer")).bind(unit=unit)
        self._template = build_request_template(config.filter)
        self._semaphore = asyncio.Semaphore(config.concurrency.max_parallel)
        self._stopping = False
        self._running: list[asyncio.Task[SyncResult]] = []

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        self._stopping = True

    def shutdown(self, cancel_after: float) -> None:
        """Stop admitting tasks and cancel the running ones ``cancel_after`` seconds later."""
        if self._stopping:
            return
        self.stop()
        self._logger.info("unit_stopping", cancel_after=cancel_after)
        asyncio.get_running_loop().call_later(cancel_after, self.cancel)

    def cancel(self) -> None:
        """Cancel every task that has not finished yet."""
        for running in self._running:
            if not running.done():
                running.cancel()

    async def _run_task(self, task: SyncTask) -> SyncResult:
        async with self._semaphore:
            if self._stopping:
                return SyncResult.failed(task, "shutdown before start")
            low, high = self._config.concurrency.stagger_delay
            if high > 0:
                await asyncio.sleep(random.uniform(low, high))  # noqa: S311
            if self._stopping:
                return SyncResult.failed(task, "shutdown before start")
            return await sync_relay(task, self._config, self._archive, self._template, self._logger)

    async def run(self, tasks: Sequence[SyncTask]) -> list[SyncResult]:
        """Run ``tasks`` and return one result per task, in order."""
        self._running = [asyncio.create_task(self._run_task(t)) for t in tasks]
        try:
            outcomes = await asyncio.gather(*self._running, return_exceptions=True)
        finally:
            self._running = []

        results: list[SyncResult] = []
        for task, outcome in zip(tasks, outcomes, strict=True):
            if isinstance(outcome, SyncResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                results.append(SyncResult.failed(task, "cancelled"))
            else:
                self._logger.error(
                    "relay_task_error",
                    relay=task.relay.url,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                results.append(SyncResult.failed(task, f"{type(outcome).__name__}: {outcome}"))
        return results


async def run_unit(
    tasks: list[SyncTask],
    config_dict: dict[str, Any],
    archive_dict: dict[str, Any],
    log_level: str,
    log_json: bool,  # noqa: FBT001
    unit: int,
) -> list[SyncResult]:
    """Entry point of a worker process.

    Rebuilds the config and an Archive of its own, runs the unit's tasks
    and returns their results. SIGINT makes the unit stop admitting tasks
    and cancel the running ones shortly before the parent's grace period
    ends, so results of relays that already finished still come back.
    """
    configure_logging(log_level, json_output=log_json)
    config = SynchronizerConfig.model_validate(config_dict)
    archive = Archive.from_dict(archive_dict)
    runner = UnitRunner(config, archive, unit=unit)

    loop = asyncio.get_running_loop()
    cancel_after = worker_cancel_delay(config.concurrency.shutdown_grace)
    loop.add_signal_handler(signal.SIGINT, runner.shutdown, cancel_after)

    async with archive:
        return await runner.run(tasks)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher:
    """Distributes a cycle's tasks over execution units and gathers the results.

    Examples:
        ```python
        dispatcher = Dispatcher(config, archive)
        dispatcher.submit(tasks)
        results = await dispatcher.collect()
        ```
    """

    def __init__(
        self,
        config: SynchronizerConfig,
        archive: Archive,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._config = config
        self._archive = archive
        self._logger = logger or Logger("synchronizer")
        self._queue: list[SyncTask] = []
        self._stopping = False
        self._runners: list[UnitRunner] = []
        self._workers: list[aiomultiprocess.Worker] = []
        self._force_handle: asyncio.TimerHandle | None = None

    @property
    def units(self) -> int:
        return self._config.concurrency.max_processes

    @property
    def stopping(self) -> bool:
        return self._stopping

    def submit(self, tasks: Iterable[SyncTask]) -> None:
        self._queue.extend(tasks)

    def partition(self, tasks: Sequence[SyncTask]) -> list[list[SyncTask]]:
        """Shuffle ``tasks`` and deal them round-robin; empty units are dropped."""
        shuffled = list(tasks)
        random.shuffle(shuffled)
        buckets: list[list[SyncTask]] = [[] for _ in range(self.units)]
        for i, task in enumerate(shuffled):
            unit = i % self.units
            buckets[unit].append(replace(task, unit=unit))
        return [bucket for bucket in buckets if bucket]

    async def collect(self) -> list[SyncResult]:
        """Run every submitted task and return one result per task.

        Tasks of crashed units are retried in later passes. Tasks still
        pending after the last pass, or when shutdown was requested, come
        back as failed results.
        """
        pending, self._queue = self._queue, []
        results: list[SyncResult] = []
        max_passes = self._config.concurrency.max_passes

        try:
            for pass_number in range(1, max_passes + 1):
                if not pending or self._stopping:
                    break
                partitions = self.partition(pending)
                self._logger.debug(
                    "dispatch_pass_started",
                    pass_number=pass_number,
                    tasks=len(pending),
                    units=len(partitions),
                )
                if self.units == 1:
                    done, pending = await self._run_local(partitions[0]), []
                else:
                    done, pending = await self._run_workers(partitions)
                results.extend(done)
                if pending and pass_number < max_passes and not self._stopping:
                    self._logger.warning(
                        "tasks_requeued", tasks=len(pending), pass_number=pass_number
                    )
        finally:
            if self._force_handle is not None:
                self._force_handle.cancel()
                self._force_handle = None

        reason = "shutdown" if self._stopping else str(WorkerError("unit exited without results"))
        results.extend(SyncResult.failed(task, reason) for task in pending)
        return results

    async def _run_local(self, tasks: list[SyncTask]) -> list[SyncResult]:
        runner = UnitRunner(self._config, self._archive, unit=0, logger=self._logger)
        self._runners = [runner]
        try:
            return await runner.run(tasks)
        finally:
            self._runners = []

    async def _run_workers(
        self, partitions: list[list[SyncTask]]
    ) -> tuple[list[SyncResult], list[SyncTask]]:
        config_dict = self._config.model_dump(mode="json")
        archive_dict = self._archive.to_dict()
        log_level, log_json = logging_settings()

        started: list[tuple[aiomultiprocess.Worker, list[SyncTask]]] = []
        for unit, tasks in enumerate(partitions):
            worker = aiomultiprocess.Worker(
                target=run_unit,
                args=(tasks, config_dict, archive_dict, log_level, log_json, unit),
                name=f"relaysync-unit-{unit}",
            )
            worker.start()
            started.append((worker, tasks))
        self._workers = [worker for worker, _ in started]

        try:
            outcomes = await asyncio.gather(
                *(worker.join() for worker, _ in started), return_exceptions=True
            )
        finally:
            self._workers = []

        done: list[SyncResult] = []
        crashed: list[SyncTask] = []
        for unit, ((worker, tasks), outcome) in enumerate(zip(started, outcomes, strict=True)):
            if isinstance(outcome, list) and worker.exitcode == 0:
                done.extend(outcome)
                continue
            self._logger.warning(
                "unit_crashed",
                unit=unit,
                exitcode=worker.exitcode,
                tasks=len(tasks),
                error=str(outcome) if isinstance(outcome, BaseException) else "no results",
            )
            crashed.extend(tasks)
        return done, crashed

    def request_shutdown(self) -> None:
        """Stop admitting tasks and force-stop in-flight work after the grace period."""
        if self._stopping:
            return
        self._stopping = True
        for runner in self._runners:
            runner.stop()
        for worker in self._workers:
            if worker.is_alive() and worker.pid is not None:
                with contextlib.suppress(ProcessLookupError):
                    os.kill(worker.pid, signal.SIGINT)

        grace = self._config.concurrency.shutdown_grace
        self._logger.info("dispatch_stopping", grace=grace)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._force_handle = loop.call_later(grace, self._force_stop)

    def _force_stop(self) -> None:
        self._force_handle = None
        if not self._runners and not self._workers:
            return
        self._logger.warning(
            "dispatch_forced_stop", runners=len(self._runners), workers=len(self._workers)
        )
        for runner in self._runners:
            runner.cancel()
        for worker in self._workers:
            if worker.is_alive():
                worker.terminate()
