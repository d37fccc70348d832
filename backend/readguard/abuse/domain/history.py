"""Per-reader activity history used by the reading scorer.

The default store is process-local. Each reader's log sits behind its own
``asyncio.Lock`` so a score-then-append sequence for one reader is a single
critical section. ``RedisActivityHistory`` shares the history across replicas
using one sorted set per reader, appended and trimmed inside a MULTI block.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
import weakref
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Protocol

from redis.asyncio import Redis

from readguard.abuse.domain.activity_log import ActivityEvent, BoundedActivityLog
from readguard.infra.redis import RedisProxy

logger = logging.getLogger(__name__)


class ActivityHistoryStore(Protocol):
    def lock(self, user_id: str) -> AbstractAsyncContextManager[None]:
        ...

    async def load(self, user_id: str, now: datetime) -> list[ActivityEvent]:
        ...

    async def append(self, user_id: str, event: ActivityEvent) -> None:
        ...

    async def clear(self, user_id: str | None = None) -> None:
        ...


class KeyedLocks:
    """Lazily created per-key locks, released for GC once nobody holds them."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


class InMemoryActivityHistory(ActivityHistoryStore):
    def __init__(
        self,
        *,
        capacity: int = 1000,
        retention: timedelta = timedelta(hours=24),
        sweep_interval: timedelta = timedelta(minutes=10),
    ) -> None:
        self._capacity = capacity
        self._retention = retention
        self._sweep_interval = sweep_interval
        self._last_sweep: datetime | None = None
        self._logs: dict[str, BoundedActivityLog[ActivityEvent]] = {}
        self._locks = KeyedLocks()

    def lock(self, user_id: str):
        return self._locks.hold(user_id)

    async def load(self, user_id: str, now: datetime) -> list[ActivityEvent]:
        log = self._logs.get(user_id)
        if log is None:
            return []
        entries = list(log.snapshot(now))
        if not entries:
            self._logs.pop(user_id, None)
        return entries

    async def append(self, user_id: str, event: ActivityEvent) -> None:
        if self._last_sweep is None:
            self._last_sweep = event.timestamp
        elif event.timestamp - self._last_sweep >= self._sweep_interval:
            self.sweep(event.timestamp)
        log = self._logs.get(user_id)
        if log is None:
            log = BoundedActivityLog(self._capacity, retention=self._retention)
            self._logs[user_id] = log
        log.prune(event.timestamp)
        log.append(event)

    async def clear(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._logs.clear()
            return
        self._logs.pop(user_id, None)

    def sweep(self, now: datetime) -> int:
        """Drop readers whose newest entry fell out of the retention window."""
        cutoff = now - self._retention
        stale = []
        for user_id, log in self._logs.items():
            latest = log.last()
            if latest is None or latest.timestamp <= cutoff:
                stale.append(user_id)
        for user_id in stale:
            del self._logs[user_id]
        self._last_sweep = now
        if stale:
            logger.debug("swept idle reading histories", extra={"dropped": len(stale)})
        return len(stale)

    def tracked_users(self) -> int:
        return len(self._logs)


def _encode_event(event: ActivityEvent) -> str:
    return json.dumps(
        {
            "id": uuid.uuid4().hex,
            "subject_id": event.subject_id,
            "ts": event.timestamp.isoformat(),
            "chapter_id": event.chapter_id,
            "title_id": event.title_id,
            "endpoint": event.endpoint,
            "method": event.method,
            "user_agent": event.user_agent,
        },
        separators=(",", ":"),
    )


def _decode_event(raw: str | bytes) -> ActivityEvent | None:
    try:
        data = json.loads(raw)
        return ActivityEvent(
            subject_id=str(data["subject_id"]),
            timestamp=datetime.fromisoformat(data["ts"]),
            chapter_id=data.get("chapter_id"),
            title_id=data.get("title_id"),
            endpoint=data.get("endpoint"),
            method=data.get("method"),
            user_agent=data.get("user_agent"),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("dropping malformed history entry", extra={"entry": str(raw)[:120]})
        return None


def _score(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class RedisActivityHistory(ActivityHistoryStore):
    def __init__(
        self,
        redis: Redis | RedisProxy,
        *,
        capacity: int = 1000,
        retention: timedelta = timedelta(hours=24),
        namespace: str = "abuse:history",
    ) -> None:
        self._redis = redis
        self._capacity = capacity
        self._retention = retention
        self._namespace = namespace
        self._locks = KeyedLocks()

    def _key(self, user_id: str) -> str:
        return f"{self._namespace}:{user_id}"

    def lock(self, user_id: str):
        return self._locks.hold(user_id)

    async def load(self, user_id: str, now: datetime) -> list[ActivityEvent]:
        cutoff = _score(now - self._retention)
        raw_entries = await self._redis.zrangebyscore(self._key(user_id), f"({cutoff}", "+inf")
        log: BoundedActivityLog[ActivityEvent] = BoundedActivityLog(self._capacity, retention=self._retention)
        for raw in raw_entries:
            event = _decode_event(raw)
            if event is not None:
                log.append(event)
        return list(log.snapshot(now))

    async def append(self, user_id: str, event: ActivityEvent) -> None:
        key = self._key(user_id)
        cutoff = _score(event.timestamp - self._retention)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {_encode_event(event): _score(event.timestamp)})
            pipe.zremrangebyscore(key, "-inf", cutoff)
            pipe.zremrangebyrank(key, 0, -(self._capacity + 1))
            pipe.expire(key, int(self._retention.total_seconds()))
            await pipe.execute()

    async def clear(self, user_id: str | None = None) -> None:
        if user_id is not None:
            await self._redis.delete(self._key(user_id))
            return
        keys = [key async for key in self._redis.scan_iter(match=f"{self._namespace}:*")]
        if keys:
            await self._redis.delete(*keys)
