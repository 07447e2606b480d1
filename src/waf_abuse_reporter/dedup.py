"""
Deduplication and cooldown gate.

Rejects events before they reach the report gate when the IP is one of the
operator's own addresses, the request path is a whitelisted endpoint or too
long, the IP was already handled in the current cycle, or the IP or ray id
has a handled history record inside the cooldown window.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from .enums import SkipReason
from .history_store import HistoryIndex
from .models import Event


class DedupGate:
    """
    Pre-report filter over one event.

    The gate is pure apart from reading the clock; the caller owns the
    seen-IP set and the history index and updates both as outcomes arrive.
    """

    def __init__(
        self,
        index: HistoryIndex,
        own_ips: Iterable[str] = (),
        whitelisted_endpoints: Iterable[str] = (),
        max_url_length: int = 920,
        cooldown: timedelta = timedelta(hours=6),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._index = index
        self._own_ips = frozenset(own_ips)
        self._endpoints = frozenset(whitelisted_endpoints)
        self._max_url_length = max_url_length
        self._cooldown = cooldown
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def index(self) -> HistoryIndex:
        return self._index

    @property
    def own_ips(self) -> frozenset[str]:
        return self._own_ips

    def evaluate(self, event: Event, seen_ips: set[str]) -> Optional[SkipReason]:
        """
        Decide whether an event must be skipped.

        Args:
            event: Candidate event
            seen_ips: IPs already handled in this cycle

        Returns:
            The first matching SkipReason, or None if the event may be reported
        """
        if event.client_ip in self._own_ips:
            return SkipReason.SELF_TRAFFIC
        if event.request_path in self._endpoints:
            return SkipReason.WHITELISTED_ENDPOINT
        if len(event.request_path) > self._max_url_length:
            return SkipReason.URL_TOO_LONG
        if event.client_ip in seen_ips:
            return SkipReason.SEEN_THIS_CYCLE
        if self._index.reported_within(event, self._clock(), self._cooldown):
            return SkipReason.RECENTLY_REPORTED
        return None
