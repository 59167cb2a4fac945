"""Adaptive time-window scheduling for one relay.

Relays cap how many events a single request may return. When a response
is as large as the cap, some events in the window may have been withheld,
so the window is cut in half and each half is requested again, until every
window comes back below the cap. The result is a set of leaf windows that
exactly tile the original range.

Windows are half-open, ``[start, end)``. Splitting ``[s, e)`` at
``mid = s + (e - s) // 2`` yields ``[s, mid)`` and ``[mid, e)``, which
share no second. NIP-01 filters are inclusive on both ends, so a window
goes on the wire as ``since=start, until=end - 1``. Events a relay returns
outside the window are dropped and counted as ``out_of_range``.

Pending windows sit on an explicit LIFO stack, with the right half pushed
before the left, so earlier time is always fetched first. Each leaf is
handed to the caller as soon as it is complete, which lets the caller
persist it before the next request goes out.

A window that is still saturated at ``min_width`` seconds cannot be split
further; it is accepted as it is, flagged ``at_floor`` and logged, and the
events the relay withheld for that second are not recoverable.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Protocol

from relaysync.core.exceptions import RelayTimeoutError
from relaysync.core.logger import Logger


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from relaysync.models import Event
    from relaysync.utils.protocol import FetchRequest, FetchResult


class Fetcher(Protocol):
    """Anything that can answer a [FetchRequest][relaysync.utils.protocol.FetchRequest]."""

    async def fetch(self, request: FetchRequest, timeout: float) -> FetchResult: ...  # noqa: ASYNC109


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` of Unix seconds."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"start must be non-negative, got {self.start}")
        if self.end <= self.start:
            raise ValueError(f"end ({self.end}) must be greater than start ({self.start})")

    @property
    def width(self) -> int:
        return self.end - self.start

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp < self.end

    def split(self) -> tuple[TimeWindow, TimeWindow]:
        """Cut into ``[start, mid)`` and ``[mid, end)``.

        Raises:
            ValueError: If the window is one second wide.
        """
        if self.width < 2:  # noqa: PLR2004
            raise ValueError(f"cannot split a {self.width}s window")
        mid = self.start + self.width // 2
        return TimeWindow(self.start, mid), TimeWindow(mid, self.end)


@dataclass(frozen=True, slots=True)
class WindowLeaf:
    """A completed window and the in-range events it produced.

    Attributes:
        window: The window that was fetched.
        events: Validated events with ``created_at`` inside ``window``.
        received: Raw number of events the relay returned.
        at_floor: True if the window was saturated but too narrow to split.
    """

    window: TimeWindow
    events: tuple[Event, ...] = ()
    received: int = 0
    at_floor: bool = False


@dataclass(slots=True)
class WindowStats:
    """Counters accumulated over one scheduler run."""

    requests: int = 0
    splits: int = 0
    floor_hits: int = 0
    leaves: int = 0
    received: int = 0
    invalid: int = 0
    out_of_range: int = 0


@dataclass(slots=True)
class Deadline:
    """Point on the monotonic clock after which a relay's work is abandoned.

    Examples:
        ```python
        deadline = Deadline.after(1800)
        timeout = min(request_timeout, deadline.remaining())
        ```
    """

    expires_at: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> Deadline:
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self) -> None:
        """Raise [RelayTimeoutError][relaysync.core.exceptions.RelayTimeoutError] if expired."""
        if self.expired:
            raise RelayTimeoutError("relay deadline exceeded")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class WindowScheduler:
    """Splits a time range until every window fits under the request limit.

    Args:
        fetcher: Open session used for every request.
        template: Request carrying the filter fields and ``limit``; its
            ``since``/``until`` are replaced per window.
        request_timeout: Upper bound for a single request.
        deadline: Shared per-relay deadline; each request waits at most
            ``min(request_timeout, deadline.remaining())``.
        min_width: Narrowest window that is still split when saturated.
        logger: Logger for floor warnings, usually bound to the relay.

    Any error raised by ``fetcher`` propagates out of
    [iter_leaves()][relaysync.services.synchronizer.windows.WindowScheduler.iter_leaves]
    and abandons the remaining stack.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        template: FetchRequest,
        *,
        request_timeout: float,
        deadline: Deadline,
        min_width: int = 1,
        logger: Logger | None = None,
    ) -> None:
        if min_width < 1:
            raise ValueError(f"min_width must be >= 1, got {min_width}")
        self._fetcher = fetcher
        self._template = template
        self._request_timeout = request_timeout
        self._deadline = deadline
        self._min_width = min_width
        self._logger = logger or Logger("synchronizer")
        self.stats = WindowStats()

    @property
    def limit(self) -> int:
        return self._template.limit

    async def iter_leaves(self, window: TimeWindow) -> AsyncIterator[WindowLeaf]:
        """Yield the leaf windows of ``window`` in chronological order.

        The next request is only sent once the consumer asks for the next
        leaf, so a consumer that persists each leaf before continuing never
        holds more than one window of events.

        Raises:
            RelayTimeoutError: The deadline expired or a request timed out.
            ConnectivityError: The session failed.
        """
        stack = [window]

        while stack:
            current = stack.pop()
            self._deadline.check()
            timeout = min(self._request_timeout, self._deadline.remaining())

            request = replace(self._template, since=current.start, until=current.end - 1)
            result = await self._fetcher.fetch(request, timeout)

            self.stats.requests += 1
            self.stats.received += result.received
            self.stats.invalid += result.invalid

            at_floor = False
            if result.received >= self.limit:
                if current.width > self._min_width:
                    left, right = current.split()
                    stack.append(right)
                    stack.append(left)
                    self.stats.splits += 1
                    continue
                at_floor = True
                self.stats.floor_hits += 1
                self._logger.warning(
                    "window_floor_reached",
                    since=current.start,
                    until=current.end,
                    received=result.received,
                    limit=self.limit,
                )

            events = tuple(e for e in result.events if current.contains(e.created_at))
            self.stats.out_of_range += len(result.events) - len(events)
            self.stats.leaves += 1
            yield WindowLeaf(
                window=current, events=events, received=result.received, at_floor=at_floor
            )

    async def fetch_window(self, start: int, end: int) -> list[WindowLeaf]:
        """Collect every leaf of ``[start, end)`` without interleaving writes."""
        return [leaf async for leaf in self.iter_leaves(TimeWindow(start, end))]
