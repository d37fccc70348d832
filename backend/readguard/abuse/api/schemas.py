"""Response and request models for the abuse HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from readguard.abuse.domain.activity_log import ActivityEvent, SuspiciousEntry
from readguard.abuse.domain.ip_risk import IpRiskRecord, IpStats
from readguard.abuse.domain.user_risk import UserBotStats, UserRiskRecord


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SuspiciousEntryOut(BaseModel):
    score: int
    reasons: list[str]
    timestamp: str
    chapter_id: str | None = None
    title_id: str | None = None
    endpoint: str | None = None

    @classmethod
    def from_domain(cls, entry: SuspiciousEntry) -> "SuspiciousEntryOut":
        return cls(
            score=entry.score,
            reasons=list(entry.reasons),
            timestamp=entry.timestamp.isoformat(),
            chapter_id=entry.chapter_id,
            title_id=entry.title_id,
            endpoint=entry.endpoint,
        )


class ActivityEventOut(BaseModel):
    timestamp: str
    endpoint: str | None = None
    method: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_domain(cls, event: ActivityEvent) -> "ActivityEventOut":
        return cls(
            timestamp=event.timestamp.isoformat(),
            endpoint=event.endpoint,
            method=event.method,
            user_agent=event.user_agent,
        )


class UserRiskOut(BaseModel):
    user_id: str
    bot_score: int
    is_bot: bool
    is_suspicious: bool
    last_activity_at: str | None
    suspicious_activity_log: list[SuspiciousEntryOut]

    @classmethod
    def from_domain(cls, record: UserRiskRecord) -> "UserRiskOut":
        return cls(
            user_id=record.user_id,
            bot_score=record.bot_score,
            is_bot=record.is_bot,
            is_suspicious=record.is_suspicious,
            last_activity_at=_iso(record.last_activity_at),
            suspicious_activity_log=[SuspiciousEntryOut.from_domain(entry) for entry in record.suspicious_activity_log],
        )


class UserBotStatsOut(BaseModel):
    total_users: int
    suspected_bots: int
    confirmed_bots: int
    recent_suspicious_activities: int

    @classmethod
    def from_domain(cls, stats: UserBotStats) -> "UserBotStatsOut":
        return cls(
            total_users=stats.total_users,
            suspected_bots=stats.suspected_bots,
            confirmed_bots=stats.confirmed_bots,
            recent_suspicious_activities=stats.recent_suspicious_activities,
        )


class IpRiskOut(BaseModel):
    ip_address: str
    bot_score: int
    is_suspicious: bool
    is_blocked: bool
    blocked_at: str | None
    blocked_until: str | None
    blocked_reason: str | None
    total_requests: int
    requests_today: int
    requests_last_minute: int
    first_seen_at: str | None
    last_request_at: str | None
    user_agent: str | None
    whitelisted_endpoints: list[str]
    activity_log: list[ActivityEventOut] = Field(default_factory=list)
    suspicious_activity_log: list[SuspiciousEntryOut] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, record: IpRiskRecord, *, include_logs: bool = True) -> "IpRiskOut":
        return cls(
            ip_address=record.ip_address,
            bot_score=record.bot_score,
            is_suspicious=record.is_suspicious,
            is_blocked=record.is_blocked,
            blocked_at=_iso(record.blocked_at),
            blocked_until=_iso(record.blocked_until),
            blocked_reason=record.blocked_reason,
            total_requests=record.total_requests,
            requests_today=record.requests_today,
            requests_last_minute=record.requests_last_minute,
            first_seen_at=_iso(record.first_seen_at),
            last_request_at=_iso(record.last_request_at),
            user_agent=record.user_agent,
            whitelisted_endpoints=list(record.whitelisted_endpoints),
            activity_log=[ActivityEventOut.from_domain(event) for event in record.activity_log] if include_logs else [],
            suspicious_activity_log=(
                [SuspiciousEntryOut.from_domain(entry) for entry in record.suspicious_activity_log]
                if include_logs
                else []
            ),
        )


class IpStatsOut(BaseModel):
    total_ips: int
    blocked_ips: int
    suspicious_ips: int
    total_requests: int
    requests_today: int

    @classmethod
    def from_domain(cls, stats: IpStats) -> "IpStatsOut":
        return cls(
            total_ips=stats.total_ips,
            blocked_ips=stats.blocked_ips,
            suspicious_ips=stats.suspicious_ips,
            total_requests=stats.total_requests,
            requests_today=stats.requests_today,
        )


class BlockIpIn(BaseModel):
    reason: str = Field(default="manual", max_length=255)
    duration_minutes: int = Field(default=60, gt=0, le=60 * 24 * 30)


class WhitelistIn(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=512)


class ReadVerdictOut(BaseModel):
    allowed: bool
    is_bot: bool
    is_suspicious: bool
