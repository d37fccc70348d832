"""Persisted per-address risk records and their repository contract.

Every mutating repository call is a single atomic step against the store:
counters are incremented in place, the score only ever rises, and block
transitions are compare-and-set so concurrent evaluations of one address
agree on a single outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol, Sequence

from readguard.abuse.domain.activity_log import ActivityEvent, SuspiciousEntry, capped


class BlockState(str, Enum):
    UNBLOCKED = "unblocked"
    BLOCKED_ACTIVE = "blocked_active"
    BLOCKED_EXPIRED = "blocked_expired"


@dataclass(slots=True)
class IpRiskRecord:
    ip_address: str
    bot_score: int = 0
    is_suspicious: bool = False
    is_blocked: bool = False
    blocked_at: datetime | None = None
    blocked_until: datetime | None = None
    blocked_reason: str | None = None
    total_requests: int = 0
    requests_today: int = 0
    requests_last_minute: int = 0
    last_rate_limit_reset: datetime | None = None
    minute_window_started_at: datetime | None = None
    last_request_at: datetime | None = None
    first_seen_at: datetime | None = None
    user_agent: str | None = None
    activity_log: list[ActivityEvent] = field(default_factory=list)
    suspicious_activity_log: list[SuspiciousEntry] = field(default_factory=list)
    whitelisted_endpoints: list[str] = field(default_factory=list)

    def block_state(self, now: datetime) -> BlockState:
        if not self.is_blocked:
            return BlockState.UNBLOCKED
        # A block without an expiry stays active until someone lifts it.
        if self.blocked_until is None or now < self.blocked_until:
            return BlockState.BLOCKED_ACTIVE
        return BlockState.BLOCKED_EXPIRED

    def is_whitelisted(self, endpoint: str | None) -> bool:
        return bool(endpoint) and endpoint in self.whitelisted_endpoints

    def copy(self) -> "IpRiskRecord":
        return replace(
            self,
            activity_log=list(self.activity_log),
            suspicious_activity_log=list(self.suspicious_activity_log),
            whitelisted_endpoints=list(self.whitelisted_endpoints),
        )


def apply_request(
    record: IpRiskRecord,
    event: ActivityEvent,
    *,
    day_start: datetime,
    minute_window: timedelta,
    log_cap: int,
) -> None:
    """Fold one observed request into ``record`` in place."""

    now = event.timestamp
    if record.first_seen_at is None:
        record.first_seen_at = now
    record.total_requests += 1
    if record.last_rate_limit_reset is None or record.last_rate_limit_reset < day_start:
        record.requests_today = 1
        record.last_rate_limit_reset = now
    else:
        record.requests_today += 1
    if record.minute_window_started_at is None or record.minute_window_started_at <= now - minute_window:
        record.requests_last_minute = 1
        record.minute_window_started_at = now
    else:
        record.requests_last_minute += 1
    record.last_request_at = now
    if event.user_agent:
        record.user_agent = event.user_agent
    record.activity_log = capped(record.activity_log, event, log_cap)


def clear_block(record: IpRiskRecord) -> None:
    """Drop the block fields. Lifting a block also zeroes the score elsewhere
    so the running maximum does not re-trigger it on the next request."""

    record.is_blocked = False
    record.blocked_at = None
    record.blocked_until = None
    record.blocked_reason = None


@dataclass(frozen=True, slots=True)
class IpStats:
    total_ips: int
    blocked_ips: int
    suspicious_ips: int
    total_requests: int
    requests_today: int


class IpRiskRepository(Protocol):
    async def get(self, ip_address: str) -> IpRiskRecord | None:
        ...

    async def record_request(
        self,
        ip_address: str,
        event: ActivityEvent,
        *,
        day_start: datetime,
        minute_window: timedelta,
        log_cap: int,
    ) -> IpRiskRecord:
        """Upsert the row, bump counters and append ``event`` to the capped log."""
        ...

    async def apply_score(
        self,
        ip_address: str,
        *,
        score: int,
        suspicious_threshold: int,
        entry: SuspiciousEntry | None,
        cap: int,
    ) -> IpRiskRecord:
        """Raise ``bot_score`` to at least ``score`` and record the audit entry, if any."""
        ...

    async def try_block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> bool:
        """Block only if the address is not already under an active block."""
        ...

    async def clear_expired_block(self, ip_address: str, now: datetime) -> bool:
        ...

    async def block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> None:
        ...

    async def unblock(self, ip_address: str) -> bool:
        ...

    async def reset(self, ip_address: str) -> bool:
        ...

    async def whitelist_endpoint(self, ip_address: str, endpoint: str, *, now: datetime) -> None:
        ...

    async def list_blocked(self, now: datetime, *, limit: int) -> Sequence[IpRiskRecord]:
        ...

    async def list_suspicious(self, *, limit: int) -> Sequence[IpRiskRecord]:
        ...

    async def stats(self, now: datetime) -> IpStats:
        ...


class InMemoryIpRiskRepository(IpRiskRepository):
    """Dict-backed repository. No call awaits mid-update, so each one is atomic."""

    def __init__(self) -> None:
        self.records: dict[str, IpRiskRecord] = {}

    def _ensure(self, ip_address: str, now: datetime | None = None) -> IpRiskRecord:
        record = self.records.get(ip_address)
        if record is None:
            record = IpRiskRecord(ip_address=ip_address, first_seen_at=now)
            self.records[ip_address] = record
        return record

    async def get(self, ip_address: str) -> IpRiskRecord | None:
        record = self.records.get(ip_address)
        return record.copy() if record is not None else None

    async def record_request(
        self,
        ip_address: str,
        event: ActivityEvent,
        *,
        day_start: datetime,
        minute_window: timedelta,
        log_cap: int,
    ) -> IpRiskRecord:
        record = self._ensure(ip_address, event.timestamp)
        apply_request(record, event, day_start=day_start, minute_window=minute_window, log_cap=log_cap)
        return record.copy()

    async def apply_score(
        self,
        ip_address: str,
        *,
        score: int,
        suspicious_threshold: int,
        entry: SuspiciousEntry | None,
        cap: int,
    ) -> IpRiskRecord:
        record = self._ensure(ip_address)
        record.bot_score = max(record.bot_score, score)
        if record.bot_score >= suspicious_threshold:
            record.is_suspicious = True
        if entry is not None:
            record.suspicious_activity_log = capped(record.suspicious_activity_log, entry, cap)
        return record.copy()

    async def try_block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> bool:
        record = self._ensure(ip_address, blocked_at)
        if record.block_state(blocked_at) is BlockState.BLOCKED_ACTIVE:
            return False
        record.is_blocked = True
        record.blocked_at = blocked_at
        record.blocked_until = blocked_until
        record.blocked_reason = reason
        return True

    async def clear_expired_block(self, ip_address: str, now: datetime) -> bool:
        record = self.records.get(ip_address)
        if record is None or record.block_state(now) is not BlockState.BLOCKED_EXPIRED:
            return False
        clear_block(record)
        record.bot_score = 0
        return True

    async def block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> None:
        record = self._ensure(ip_address, blocked_at)
        record.is_blocked = True
        record.blocked_at = blocked_at
        record.blocked_until = blocked_until
        record.blocked_reason = reason

    async def unblock(self, ip_address: str) -> bool:
        record = self.records.get(ip_address)
        if record is None:
            return False
        clear_block(record)
        # The suspicious flag survives so the address stays on the stricter tier.
        record.bot_score = 0
        return True

    async def reset(self, ip_address: str) -> bool:
        record = self.records.get(ip_address)
        if record is None:
            return False
        record.bot_score = 0
        record.is_suspicious = False
        clear_block(record)
        return True

    async def whitelist_endpoint(self, ip_address: str, endpoint: str, *, now: datetime) -> None:
        record = self._ensure(ip_address, now)
        if endpoint not in record.whitelisted_endpoints:
            record.whitelisted_endpoints.append(endpoint)

    async def list_blocked(self, now: datetime, *, limit: int) -> Sequence[IpRiskRecord]:
        blocked = [
            record.copy()
            for record in self.records.values()
            if record.block_state(now) is BlockState.BLOCKED_ACTIVE
        ]
        blocked.sort(key=lambda record: record.blocked_at or now, reverse=True)
        return blocked[:limit]

    async def list_suspicious(self, *, limit: int) -> Sequence[IpRiskRecord]:
        flagged = [record.copy() for record in self.records.values() if record.is_suspicious]
        flagged.sort(key=lambda record: record.bot_score, reverse=True)
        return flagged[:limit]

    async def stats(self, now: datetime) -> IpStats:
        values = list(self.records.values())
        return IpStats(
            total_ips=len(values),
            blocked_ips=sum(1 for record in values if record.block_state(now) is BlockState.BLOCKED_ACTIVE),
            suspicious_ips=sum(1 for record in values if record.is_suspicious),
            total_requests=sum(record.total_requests for record in values),
            requests_today=sum(record.requests_today for record in values),
        )
