"""Sliding-window rate limiting over an activity log snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from readguard.abuse.domain.activity_log import Timestamped
from readguard.abuse.domain.config import DetectionConfig


class TrustTier(str, Enum):
    """Rate-limit bucket a subject currently falls into."""

    NORMAL = "normal"
    SUSPICIOUS = "suspicious"
    ANONYMOUS = "anonymous"
    BLOCKED = "blocked"


@dataclass(frozen=True, slots=True)
class RateDecision:
    allowed: bool
    remaining_ms: int
    count: int = 0
    limit: int = 0


def limit_for_tier(tier: TrustTier, config: DetectionConfig) -> int:
    if tier is TrustTier.BLOCKED:
        return 0
    if tier is TrustTier.SUSPICIOUS:
        return config.rate_limit_suspicious
    if tier is TrustTier.ANONYMOUS:
        return config.rate_limit_anonymous
    return config.rate_limit_normal


def check_rate(
    log: Iterable[Timestamped],
    now: datetime,
    *,
    limit: int,
    window: timedelta = timedelta(milliseconds=60_000),
) -> RateDecision:
    """Admit when fewer than ``limit`` events fall inside the trailing window.

    On denial ``remaining_ms`` is the time until the oldest in-window event
    slides out. Pure: the log is only read.
    """

    window_ms = int(window.total_seconds() * 1000)
    start = now - window
    in_window = [entry.timestamp for entry in log if entry.timestamp > start]
    count = len(in_window)
    if limit <= 0:
        return RateDecision(allowed=False, remaining_ms=window_ms, count=count, limit=0)
    if count >= limit:
        oldest = min(in_window)
        elapsed_ms = int((now - oldest).total_seconds() * 1000)
        return RateDecision(allowed=False, remaining_ms=max(0, window_ms - elapsed_ms), count=count, limit=limit)
    return RateDecision(allowed=True, remaining_ms=0, count=count, limit=limit)
