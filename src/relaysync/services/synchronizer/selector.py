"""Relay selection for a sync cycle.

Which relays exist and whether they are healthy is decided elsewhere: a
separate probing service records NIP-66 results and maintains the
``relay_metadata_latest`` view. The synchronizer only reads that signal
through the [RelaySelector][relaysync.services.synchronizer.selector.RelaySelector]
protocol, then merges in statically configured relays and overrides in
[select_relays()][relaysync.services.synchronizer.selector.select_relays].
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from relaysync.core.logger import Logger
from relaysync.models.relay import Relay


if TYPE_CHECKING:
    from collections.abc import Iterable

    from relaysync.core.archive import Archive

    from .configs import SynchronizerConfig


_ELIGIBLE_RELAYS_QUERY = """
SELECT relay_url, discovered_at, is_readable
FROM relay_metadata_latest
WHERE nip66_rtt_at > $1
ORDER BY relay_url
"""

_READABLE_QUERY = """
SELECT is_readable FROM relay_metadata_latest WHERE relay_url = $1
"""


class RelaySelector(Protocol):
    """Source of relays worth syncing."""

    async def list_eligible_endpoints(self, staleness_threshold: int) -> list[Relay]:
        """Relays probed after ``staleness_threshold`` (Unix seconds)."""
        ...

    async def is_readable(self, relay: Relay) -> bool:
        """Whether the latest probe could read events from ``relay``."""
        ...


class DatabaseRelaySelector:
    """Reads probe results from the ``relay_metadata_latest`` view.

    Readability flags seen while listing are cached until the next listing,
    so checking every listed relay costs no further queries.
    """

    def __init__(self, archive: Archive) -> None:
        self._archive = archive
        self._readable: dict[str, bool] = {}
        self._logger = Logger("selector")

    async def list_eligible_endpoints(self, staleness_threshold: int) -> list[Relay]:
        self._readable = {}
        rows = await self._archive.fetch(_ELIGIBLE_RELAYS_QUERY, staleness_threshold)
        relays: list[Relay] = []
        for row in rows:
            url = row["relay_url"].strip()
            try:
                relay = Relay(url, discovered_at=row["discovered_at"])
            except (ValueError, TypeError) as e:
                self._logger.debug("invalid_relay_url", url=url, error=str(e))
                continue
            self._readable[relay.url] = bool(row["is_readable"])
            relays.append(relay)
        self._logger.debug("relays_fetched", count=len(relays), threshold=staleness_threshold)
        return relays

    async def is_readable(self, relay: Relay) -> bool:
        cached = self._readable.get(relay.url)
        if cached is not None:
            return cached
        value = await self._archive.fetchval(_READABLE_QUERY, relay.url)
        readable = bool(value)
        self._readable[relay.url] = readable
        return readable


def _parse_urls(urls: Iterable[str], logger: Logger) -> list[Relay]:
    relays = []
    for url in urls:
        try:
            relays.append(Relay(url))
        except ValueError as e:
            logger.warning("invalid_relay_url", url=url, error=str(e))
    return relays


async def select_relays(
    config: SynchronizerConfig,
    selector: RelaySelector | None,
    now: int,
    *,
    logger: Logger | None = None,
) -> list[Relay]:
    """Build the deduplicated list of relays to sync this cycle.

    Sources, in order: the selector (when ``source.from_database``),
    ``source.relays``, then override URLs. Database relays are kept only
    if probed within ``source.max_metadata_age`` seconds (0 disables the
    age check) and, with ``source.require_readable``, found readable.
    Static and override relays are always kept. Relays on disabled
    networks are dropped; a URL appearing twice is kept once.
    """
    log = logger or Logger("selector")
    candidates: list[Relay] = []

    if config.source.from_database and selector is not None:
        age = config.source.max_metadata_age
        threshold = now - age if age > 0 else 0
        for relay in await selector.list_eligible_endpoints(threshold):
            if config.source.require_readable and not await selector.is_readable(relay):
                continue
            candidates.append(relay)

    candidates.extend(_parse_urls(config.source.relays, log))
    candidates.extend(_parse_urls((o.url for o in config.overrides), log))

    selected: dict[str, Relay] = {}
    skipped_networks = 0
    for relay in candidates:
        if relay.url in selected:
            continue
        if not config.is_network_enabled(relay.network):
            skipped_networks += 1
            continue
        selected[relay.url] = relay

    if skipped_networks:
        log.debug("relays_skipped_network_disabled", count=skipped_networks)
    return list(selected.values())
