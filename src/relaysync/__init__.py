r"""relaysync -- incremental event synchronization from Nostr relays.

A long-running service copies events from many relays into PostgreSQL,
splitting time ranges adaptively so that relay result caps never silently
drop events, and resuming each relay from a persisted cursor.

Imports flow strictly downward:

```text
          services         Cycle orchestration, windows, dispatch
          /      \
       core      utils     Pool, archive, logging, metrics / relay sessions
          \      /
          models           Frozen dataclasses (no I/O)
```

Attributes:
    models: Frozen dataclasses for relays, events and service state.
    core: Connection pool, archive facade, base service, exceptions,
        logging, metrics.
    utils: NIP-01 relay sessions over WebSockets.
    services: The synchronizer.
"""

from importlib.metadata import version as _get_version


__version__ = _get_version("relaysync")
