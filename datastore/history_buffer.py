from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Callable, Deque, Optional

from models.records import HistoryEntry
from settings import get_settings

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HistoryBuffer:
    """Shared, age- and size-bounded log of stabilized readings."""

    def __init__(
        self,
        retention: timedelta = timedelta(minutes=5),
        max_entries: int = 300,
        clock: Clock = utc_now,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        self.retention = retention
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Deque[HistoryEntry] = deque()
        self._lock = Lock()

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            self._prune(self._clock())

    def snapshot(self, device_id: Optional[str] = None) -> list[HistoryEntry]:
        """Return entries in arrival order, optionally for a single device."""

        with self._lock:
            self._prune(self._clock())
            if device_id is None:
                return list(self._entries)
            return [entry for entry in self._entries if entry.device_id == device_id]

    def prune(self) -> int:
        with self._lock:
            before = len(self._entries)
            self._prune(self._clock())
            return before - len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        # Arrival order is not strictly time order, so scan every entry.
        if any(entry.timestamp <= cutoff for entry in self._entries):
            self._entries = deque(
                entry for entry in self._entries if entry.timestamp > cutoff
            )
        while len(self._entries) > self.max_entries:
            self._entries.popleft()


@lru_cache
def build_default_history(
    retention_minutes: Optional[float] = None,
    max_entries: Optional[int] = None,
) -> HistoryBuffer:
    settings = get_settings()
    minutes = settings.history_retention_minutes if retention_minutes is None else retention_minutes
    limit = settings.history_max_entries if max_entries is None else max_entries
    return HistoryBuffer(retention=timedelta(minutes=minutes), max_entries=limit)
