"""Activity events and the capped, time-pruned log that holds them."""

from __future__ import annotations

from bisect import insort
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, Iterable, Iterator, Protocol, Sequence, TypeVar


class Timestamped(Protocol):
    @property
    def timestamp(self) -> datetime:
        ...


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """Single observed read or request."""

    subject_id: str
    timestamp: datetime
    chapter_id: str | None = None
    title_id: str | None = None
    endpoint: str | None = None
    method: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class SuspiciousEntry:
    """Audit record written when a check scores above zero."""

    score: int
    timestamp: datetime
    reasons: tuple[str, ...] = field(default_factory=tuple)
    chapter_id: str | None = None
    title_id: str | None = None
    endpoint: str | None = None


T = TypeVar("T", bound=Timestamped)


def _timestamp(entry: Timestamped) -> datetime:
    return entry.timestamp


class BoundedActivityLog(Generic[T]):
    """Ordered event log with a fixed capacity and an optional retention window.

    Entries are kept in timestamp order. Both pruning rules drop from the oldest
    end only, so surviving entries never change relative order.
    """

    __slots__ = ("_capacity", "_retention", "_entries")

    def __init__(
        self,
        capacity: int,
        *,
        retention: timedelta | None = None,
        entries: Iterable[T] = (),
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._retention = retention
        self._entries: list[T] = sorted(entries, key=_timestamp)
        self._trim()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def retention(self) -> timedelta | None:
        return self._retention

    def append(self, entry: T) -> None:
        if self._entries and entry.timestamp < self._entries[-1].timestamp:
            # Late arrival (clock skew between callers): slot it in, keep order.
            insort(self._entries, entry, key=_timestamp)
        else:
            self._entries.append(entry)
        self._trim()

    def prune(self, now: datetime) -> None:
        if self._retention is None:
            return
        cutoff = now - self._retention
        drop = 0
        for entry in self._entries:
            if entry.timestamp > cutoff:
                break
            drop += 1
        if drop:
            del self._entries[:drop]

    def snapshot(self, now: datetime | None = None) -> tuple[T, ...]:
        if now is not None:
            self.prune(now)
        return tuple(self._entries)

    def last(self) -> T | None:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def _trim(self) -> None:
        overflow = len(self._entries) - self._capacity
        if overflow > 0:
            del self._entries[:overflow]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(tuple(self._entries))

    def __repr__(self) -> str:
        return f"BoundedActivityLog(len={len(self._entries)}, capacity={self._capacity})"


def capped(entries: Sequence[T], entry: T, capacity: int) -> list[T]:
    """Return ``entries`` plus ``entry``, oldest-evicted down to ``capacity``."""

    log: BoundedActivityLog[T] = BoundedActivityLog(capacity, entries=entries)
    log.append(entry)
    return list(log.snapshot())
