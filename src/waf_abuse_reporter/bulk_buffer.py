"""
Bulk buffer for reports deferred by the daily quota.

An insertion-ordered, capacity-bounded mapping from IP to BufferEntry.
Persistence is handled by BufferStore; the report gate saves after every
mutation.
"""

from typing import Iterator, Optional

from .enums import OutcomeStatus
from .models import BufferEntry


DEFAULT_CAPACITY = 100_000


class BulkBuffer:
    """Capacity-bounded staging map of IP -> BufferEntry."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"Buffer capacity must be positive: {capacity}")
        self._capacity = capacity
        self._entries: dict[str, BufferEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ip: object) -> bool:
        return ip in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._entries) >= self._capacity

    def get(self, ip: str) -> Optional[BufferEntry]:
        return self._entries.get(ip)

    def items(self) -> list[tuple[str, BufferEntry]]:
        """Snapshot of all entries in insertion order."""
        return list(self._entries.items())

    def enqueue(self, ip: str, entry: BufferEntry) -> OutcomeStatus:
        """
        Queue an IP for the next bulk flush.

        Returns:
            ALREADY_IN_BUFFER if the IP is queued already, BUFFER_IS_FULL at
            capacity, READY_FOR_BULK_REPORT once inserted. The buffer is only
            mutated in the last case.
        """
        if ip in self._entries:
            return OutcomeStatus.ALREADY_IN_BUFFER
        if self.is_full:
            return OutcomeStatus.BUFFER_IS_FULL
        self._entries[ip] = entry
        return OutcomeStatus.READY_FOR_BULK_REPORT

    def remove(self, ip: str) -> Optional[BufferEntry]:
        return self._entries.pop(ip, None)

    def clear(self) -> None:
        self._entries.clear()

    def to_mapping(self) -> dict[str, BufferEntry]:
        return dict(self._entries)

    def replace(self, mapping: dict[str, BufferEntry]) -> None:
        """
        Replace the contents with a loaded mapping, keeping its order.

        Entries beyond capacity are dropped.
        """
        self._entries = {}
        for ip, entry in mapping.items():
            if len(self._entries) >= self._capacity:
                break
            self._entries[ip] = entry
