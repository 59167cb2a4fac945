"""Network utilities shared by services.

See Also:
    [relaysync.utils.protocol][]: NIP-01 relay sessions over aiohttp WebSockets.
"""

from .protocol import (
    FetchRequest,
    FetchResult,
    RelaySession,
    create_http_session,
    open_session,
)


__all__ = [
    "FetchRequest",
    "FetchResult",
    "RelaySession",
    "create_http_session",
    "open_session",
]
