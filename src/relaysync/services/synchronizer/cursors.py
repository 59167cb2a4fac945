"""Per-relay sync cursors.

A cursor is the ``created_at`` of the newest event persisted for a relay by
a task that covered its whole range. Everything the relay held before it
has been stored, and the next cycle resumes from there.

The whole map lives in a single ``service_state`` row, read once at the
start of a cycle and written once at the end::

    service_name = "synchronizer"
    state_type   = "cursor"
    state_key    = "synchronizer"
    state_value  = {"cursor_map": {"wss://relay.example.com": 1700000000, ...}}

Cursors only move forward.
[set_cursor()][relaysync.services.synchronizer.cursors.CursorStore.set_cursor]
ignores values below the stored one; the only way back is an explicit
[reset_cursor()][relaysync.services.synchronizer.cursors.CursorStore.reset_cursor].

[save()][relaysync.services.synchronizer.cursors.CursorStore.save] reads the
row again first. Relays whose cursor was loaded but has since disappeared
from the row were reset by another process (``relaysync --reset-cursor``),
and the reset is kept instead of being overwritten.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from relaysync.core.logger import Logger
from relaysync.models.constants import ServiceName
from relaysync.models.service_state import ServiceState, ServiceStateType


if TYPE_CHECKING:
    from relaysync.core.archive import Archive


CURSOR_MAP_KEY = "cursor_map"


class CursorStore:
    """In-memory cursor map backed by one ``service_state`` row.

    Args:
        archive: Where the map is loaded from and saved to.
        lookback_seconds: How far before ``now`` a relay without a cursor
            starts.
        service_name: Owner of the state row.
    """

    def __init__(
        self,
        archive: Archive,
        lookback_seconds: int,
        *,
        service_name: ServiceName = ServiceName.SYNCHRONIZER,
    ) -> None:
        self._archive = archive
        self._lookback_seconds = lookback_seconds
        self._service_name = service_name
        self._cursors: dict[str, int] = {}
        self._loaded: set[str] = set()
        self._logger = Logger("cursors")

    @property
    def state_key(self) -> str:
        return str(self._service_name)

    async def load(self) -> int:
        """Replace the in-memory map with the stored one.

        Entries that are not non-negative integers are dropped with a
        warning.

        Returns:
            Number of cursors loaded.
        """
        cursors = await self._read()
        self._cursors = cursors
        self._loaded = set(cursors)
        self._logger.debug("cursors_loaded", count=len(cursors))
        return len(cursors)

    async def _read(self) -> dict[str, int]:
        rows = await self._archive.get_service_state(
            self._service_name, ServiceStateType.CURSOR, self.state_key
        )
        cursors: dict[str, int] = {}
        if rows:
            stored = rows[0].state_value.get(CURSOR_MAP_KEY) or {}
            for url, value in stored.items():
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    self._logger.warning("cursor_invalid", relay=url, value=value)
                    continue
                cursors[url] = value
        return cursors

    def get_cursor(self, url: str, now: int) -> int:
        """Stored cursor for ``url``, or ``now - lookback_seconds`` for a new relay."""
        cursor = self._cursors.get(url)
        if cursor is None:
            return max(0, now - self._lookback_seconds)
        return cursor

    def set_cursor(self, url: str, timestamp: int) -> bool:
        """Advance the cursor for ``url``.

        Returns:
            True if the cursor moved, False if ``timestamp`` was not ahead
            of the stored value.
        """
        current = self._cursors.get(url)
        if current is not None and timestamp <= current:
            return False
        self._cursors[url] = timestamp
        return True

    def reset_cursor(self, url: str) -> bool:
        """Forget the cursor for ``url`` so the next sync starts from the lookback.

        Returns:
            True if a cursor was removed.
        """
        return self._cursors.pop(url, None) is not None

    def snapshot(self) -> dict[str, int]:
        return dict(self._cursors)

    async def save(self, now: int | None = None) -> None:
        """Write the whole map as one upsert.

        Cursors that were removed from the row after
        [load()][relaysync.services.synchronizer.cursors.CursorStore.load]
        are dropped from memory first.

        Raises:
            DatabaseError: The write failed after the pool's retries.
        """
        if self._loaded:
            stored = await self._read()
            for url in sorted(self._loaded - stored.keys()):
                if self._cursors.pop(url, None) is not None:
                    self._logger.warning("cursor_reset_kept", relay=url)
        state = ServiceState(
            service_name=self._service_name,
            state_type=ServiceStateType.CURSOR,
            state_key=self.state_key,
            state_value={CURSOR_MAP_KEY: dict(self._cursors)},
            updated_at=now if now is not None else int(time.time()),
        )
        await self._archive.upsert_service_state([state])
        self._loaded = set(self._cursors)
        self._logger.debug("cursors_saved", count=len(self._cursors))

    def __len__(self) -> int:
        return len(self._cursors)

    def __contains__(self, url: object) -> bool:
        return url in self._cursors
