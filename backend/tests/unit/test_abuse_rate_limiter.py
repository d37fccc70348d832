from __future__ import annotations

from datetime import datetime, timedelta, timezone

from readguard.abuse.domain.activity_log import ActivityEvent
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.rate_limiter import TrustTier, check_rate, limit_for_tier

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _log(*offsets_ms: int) -> list[ActivityEvent]:
    return [ActivityEvent(subject_id="ip", timestamp=NOW - timedelta(milliseconds=ms)) for ms in offsets_ms]


def test_allows_below_limit() -> None:
    decision = check_rate(_log(1000, 2000), NOW, limit=3)

    assert decision.allowed is True
    assert decision.remaining_ms == 0
    assert decision.count == 2


def test_denies_at_limit_with_time_until_oldest_slides_out() -> None:
    decision = check_rate(_log(45_000, 20_000, 1_000), NOW, limit=3)

    assert decision.allowed is False
    assert decision.remaining_ms == 15_000


def test_events_outside_window_are_ignored() -> None:
    decision = check_rate(_log(60_000, 90_000, 10), NOW, limit=2)

    assert decision.allowed is True
    assert decision.count == 1


def test_remaining_is_never_negative() -> None:
    decision = check_rate(_log(0, 0), NOW, limit=1, window=timedelta(milliseconds=1))

    assert decision.allowed is False
    assert decision.remaining_ms >= 0


def test_zero_limit_always_denies() -> None:
    decision = check_rate([], NOW, limit=0)

    assert decision.allowed is False
    assert decision.remaining_ms == 60_000


def test_same_snapshot_gives_same_answer() -> None:
    log = _log(59_000, 30_000, 5_000)
    before = list(log)

    first = check_rate(log, NOW, limit=3)
    second = check_rate(log, NOW, limit=3)

    assert first == second
    assert log == before


def test_tier_limits_follow_config() -> None:
    config = DetectionConfig(rate_limit_normal=60, rate_limit_suspicious=10, rate_limit_anonymous=50)

    assert limit_for_tier(TrustTier.NORMAL, config) == 60
    assert limit_for_tier(TrustTier.SUSPICIOUS, config) == 10
    assert limit_for_tier(TrustTier.ANONYMOUS, config) == 50
    assert limit_for_tier(TrustTier.BLOCKED, config) == 0
