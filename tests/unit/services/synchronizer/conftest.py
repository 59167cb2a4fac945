"""Shared fixtures and helpers for services.synchronizer test package."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from relaysync.core.archive import Archive, OrphanCounts
from relaysync.services.synchronizer import (
    ConcurrencyConfig,
    SourceConfig,
    SynchronizerConfig,
)
from relaysync.utils.protocol import FetchRequest, FetchResult


class FakeRelay:
    """In-memory relay answering requests like a real one would.

    Returns the newest ``limit`` events inside ``[since, until]``. ``fail_on``
    maps a request count to an exception raised for that request.
    """

    def __init__(self, events=(), *, fail_on=None):
        self.events = list(events)
        self.requests: list[FetchRequest] = []
        self.timeouts: list[float] = []
        self.fail_on = dict(fail_on or {})
        self.extra: list = []

    async def fetch(self, request: FetchRequest, timeout: float) -> FetchResult:
        self.requests.append(request)
        self.timeouts.append(timeout)
        error = self.fail_on.get(len(self.requests))
        if error is not None:
            raise error
        matching = [e for e in self.events if request.since <= e.created_at <= request.until]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        page = matching[: request.limit] + self.extra
        return FetchResult(events=page, received=len(page))

    @property
    def windows(self) -> list[tuple[int, int]]:
        """Requested ranges as half-open ``(start, end)`` pairs."""
        return [(r.since, r.until + 1) for r in self.requests]


class FakeSession:
    """Async context manager standing in for ``open_session()``."""

    def __init__(self, fetcher: FakeRelay, *, enter_error: BaseException | None = None):
        self.fetcher = fetcher
        self.enter_error = enter_error
        self.closed = False

    async def __aenter__(self) -> FakeRelay:
        if self.enter_error is not None:
            raise self.enter_error
        return self.fetcher

    async def __aexit__(self, *_exc) -> None:
        self.closed = True


@pytest.fixture
def sync_config() -> SynchronizerConfig:
    """Single-unit config without stagger delays or database selection."""
    return SynchronizerConfig(
        concurrency=ConcurrencyConfig(
            max_processes=1, max_parallel=4, stagger_delay=(0.0, 0.0), shutdown_grace=0.05
        ),
        source=SourceConfig(from_database=False),
    )


@pytest.fixture
def stub_archive() -> MagicMock:
    """Archive double recording writes; every record counts as new."""
    archive = MagicMock(spec=Archive)
    archive.insert_records = AsyncMock(side_effect=lambda records: len(records))
    archive.upsert_service_state = AsyncMock(return_value=1)
    archive.get_service_state = AsyncMock(return_value=[])
    archive.reclaim_orphans = AsyncMock(return_value=OrphanCounts(events=0, metadata=0))
    archive.fetch = AsyncMock(return_value=[])
    archive.fetchval = AsyncMock(return_value=None)
    archive.to_dict = MagicMock(return_value={"pool": {}, "batch": {"max_size": 1000}})
    return archive


@pytest.fixture
def fake_relay() -> type[FakeRelay]:
    """The FakeRelay class, for tests that build their own relays."""
    return FakeRelay


@pytest.fixture
def fake_session() -> type[FakeSession]:
    return FakeSession
