"""Persisted per-reader risk records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol, Sequence

from readguard.abuse.domain.activity_log import SuspiciousEntry, capped


@dataclass(slots=True)
class UserRiskRecord:
    user_id: str
    bot_score: int = 0
    is_bot: bool = False
    is_suspicious: bool = False
    last_activity_at: datetime | None = None
    suspicious_activity_log: list[SuspiciousEntry] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class UserBotStats:
    total_users: int
    suspected_bots: int
    confirmed_bots: int
    recent_suspicious_activities: int


class UserRiskRepository(Protocol):
    async def get(self, user_id: str) -> UserRiskRecord | None:
        ...

    async def append_suspicious(self, user_id: str, entry: SuspiciousEntry, *, cap: int) -> None:
        ...

    async def update_status(
        self,
        user_id: str,
        *,
        is_bot: bool,
        is_suspicious: bool,
        bot_score: int,
        at: datetime,
    ) -> None:
        ...

    async def list_suspicious(self, *, limit: int, score_threshold: int) -> Sequence[UserRiskRecord]:
        ...

    async def reset(self, user_id: str) -> None:
        ...

    async def stats(self) -> UserBotStats:
        ...


class InMemoryUserRiskRepository(UserRiskRepository):
    def __init__(self) -> None:
        self.records: dict[str, UserRiskRecord] = {}

    def _ensure(self, user_id: str) -> UserRiskRecord:
        record = self.records.get(user_id)
        if record is None:
            record = UserRiskRecord(user_id=user_id)
            self.records[user_id] = record
        return record

    async def get(self, user_id: str) -> UserRiskRecord | None:
        record = self.records.get(user_id)
        if record is None:
            return None
        return replace(record, suspicious_activity_log=list(record.suspicious_activity_log))

    async def append_suspicious(self, user_id: str, entry: SuspiciousEntry, *, cap: int) -> None:
        record = self._ensure(user_id)
        record.suspicious_activity_log = capped(record.suspicious_activity_log, entry, cap)
        record.last_activity_at = entry.timestamp

    async def update_status(
        self,
        user_id: str,
        *,
        is_bot: bool,
        is_suspicious: bool,
        bot_score: int,
        at: datetime,
    ) -> None:
        record = self._ensure(user_id)
        record.last_activity_at = at
        if is_bot:
            record.is_bot = True
            record.bot_score = bot_score
        elif is_suspicious:
            record.bot_score += bot_score
            record.is_suspicious = True

    async def list_suspicious(self, *, limit: int, score_threshold: int) -> Sequence[UserRiskRecord]:
        flagged = [
            record
            for record in self.records.values()
            if record.is_bot or record.is_suspicious or record.bot_score > score_threshold
        ]
        flagged.sort(key=lambda record: record.bot_score, reverse=True)
        return flagged[:limit]

    async def reset(self, user_id: str) -> None:
        record = self._ensure(user_id)
        record.is_bot = False
        record.is_suspicious = False
        record.bot_score = 0
        record.suspicious_activity_log = []

    async def stats(self) -> UserBotStats:
        values = list(self.records.values())
        return UserBotStats(
            total_users=len(values),
            suspected_bots=sum(1 for record in values if record.is_suspicious and not record.is_bot),
            confirmed_bots=sum(1 for record in values if record.is_bot),
            recent_suspicious_activities=sum(1 for record in values if record.suspicious_activity_log),
        )
