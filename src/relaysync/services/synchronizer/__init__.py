"""Synchronizer service package.

Collects Nostr events from relays into the archive with adaptive
time-window splitting and per-relay cursors.

Attributes:
    Synchronizer: The service; see
        [Synchronizer][relaysync.services.synchronizer.service.Synchronizer].
    SynchronizerConfig: Its configuration model.
    WindowScheduler: Splits a time range until no window is saturated.
    Dispatcher: Runs relay tasks across execution units.
    CursorStore: Per-relay resume points.
"""

from .configs import (
    ConcurrencyConfig,
    FilterConfig,
    MaintenanceConfig,
    RelayOverride,
    RelayOverrideTimeouts,
    RelayTimeouts,
    SourceConfig,
    SynchronizerConfig,
    TimeRangeConfig,
    WindowsConfig,
)
from .cursors import CURSOR_MAP_KEY, CursorStore
from .dispatch import (
    Dispatcher,
    SyncResult,
    SyncTask,
    UnitRunner,
    build_request_template,
    run_unit,
    sync_relay,
)
from .selector import DatabaseRelaySelector, RelaySelector, select_relays
from .service import CycleCounters, CyclePhase, Synchronizer
from .windows import Deadline, TimeWindow, WindowLeaf, WindowScheduler, WindowStats


__all__ = [
    "CURSOR_MAP_KEY",
    "ConcurrencyConfig",
    "CursorStore",
    "CycleCounters",
    "CyclePhase",
    "DatabaseRelaySelector",
    "Deadline",
    "Dispatcher",
    "FilterConfig",
    "MaintenanceConfig",
    "RelayOverride",
    "RelayOverrideTimeouts",
    "RelaySelector",
    "RelayTimeouts",
    "SourceConfig",
    "SyncResult",
    "SyncTask",
    "Synchronizer",
    "SynchronizerConfig",
    "TimeRangeConfig",
    "TimeWindow",
    "UnitRunner",
    "WindowLeaf",
    "WindowScheduler",
    "WindowStats",
    "WindowsConfig",
    "build_request_template",
    "run_unit",
    "select_relays",
    "sync_relay",
]
