from __future__ import annotations

from datetime import datetime, timedelta, timezone

from readguard.abuse.domain import heuristics
from readguard.abuse.domain.activity_log import ActivityEvent
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.rate_limiter import RateDecision

NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
CONFIG = DetectionConfig()


def _reads(*seconds_ago: int, title_id: str = "t1") -> list[ActivityEvent]:
    return [
        ActivityEvent(subject_id="u1", timestamp=NOON - timedelta(seconds=s), chapter_id=f"c{s}", title_id=title_id)
        for s in seconds_ago
    ]


def test_reading_speed_names_gap_and_minimum() -> None:
    hit = heuristics.check_reading_speed(_reads(5), NOON, CONFIG)

    assert hit.triggered is True
    assert hit.weight == 20
    assert hit.reason == "Reading speed too fast: 5s between chapters (min: 10s)"


def test_reading_speed_quiet_on_empty_history() -> None:
    assert heuristics.check_reading_speed([], NOON, CONFIG).triggered is False
    assert heuristics.check_reading_speed(_reads(10), NOON, CONFIG).triggered is False


def test_reading_speed_follows_configured_interval() -> None:
    config = DetectionConfig(min_time_between_chapters_ms=2_500)
    latest = [ActivityEvent(subject_id="u1", timestamp=NOON - timedelta(milliseconds=2_500), chapter_id="c1")]

    assert heuristics.check_reading_speed(latest, NOON, config).triggered is False
    assert heuristics.check_reading_speed(latest, NOON - timedelta(milliseconds=1), config).triggered is True
    assert config.min_interval == timedelta(milliseconds=2_500)


def test_hourly_volume_counts_current_read() -> None:
    hundred = _reads(*range(30, 3001, 30))
    ninety_nine = hundred[1:]

    assert heuristics.check_hourly_volume(hundred, NOON, CONFIG).triggered is True
    assert heuristics.check_hourly_volume(ninety_nine, NOON, CONFIG).triggered is False


def test_reading_sequence_needs_more_than_ten_of_same_title() -> None:
    ten = _reads(*range(20, 201, 20))
    eleven = _reads(*range(20, 221, 20))

    assert heuristics.check_reading_sequence(ten, "t1", CONFIG).triggered is False
    hit = heuristics.check_reading_sequence(eleven, "t1", CONFIG)
    assert hit.triggered is True
    assert hit.weight == 15
    assert heuristics.check_reading_sequence(eleven, "other", CONFIG).triggered is False


def test_night_window_is_half_open() -> None:
    at = lambda hour: NOON.replace(hour=hour)  # noqa: E731

    assert heuristics.check_night_time(at(2), CONFIG).triggered is True
    assert heuristics.check_night_time(at(5), CONFIG).triggered is True
    assert heuristics.check_night_time(at(6), CONFIG).triggered is False
    assert heuristics.check_night_time(at(1), CONFIG).triggered is False


def test_night_window_uses_configured_timezone() -> None:
    config = DetectionConfig(local_timezone="Europe/Moscow")

    # 00:30 UTC is 03:30 in Moscow
    assert heuristics.check_night_time(NOON.replace(hour=0, minute=30), config).triggered is True


def test_burst_buckets_are_exclusive() -> None:
    fast = [NOON + timedelta(milliseconds=200 * i) for i in range(10)]
    slow = [NOON + timedelta(milliseconds=700 * i) for i in range(10)]
    calm = [NOON + timedelta(seconds=3 * i) for i in range(10)]

    fast_hit = heuristics.check_burst_frequency(fast, CONFIG)
    slow_hit = heuristics.check_burst_frequency(slow, CONFIG)

    assert (fast_hit.triggered, fast_hit.weight) == (True, 25)
    assert (slow_hit.triggered, slow_hit.weight) == (True, 15)
    assert heuristics.check_burst_frequency(calm, CONFIG).triggered is False


def test_burst_looks_only_at_recent_sample() -> None:
    old = [NOON - timedelta(hours=1) + timedelta(milliseconds=100 * i) for i in range(30)]
    recent = [NOON + timedelta(seconds=5 * i) for i in range(20)]

    assert heuristics.check_burst_frequency(old + recent, CONFIG).triggered is False


def test_burst_needs_minimum_sample() -> None:
    few = [NOON + timedelta(milliseconds=10 * i) for i in range(CONFIG.ip_burst_min_samples - 1)]

    assert heuristics.check_burst_frequency(few, CONFIG).triggered is False


def test_endpoint_diversity_requires_count_and_ratio() -> None:
    sweep = [f"/api/chapters/{i}" for i in range(60)]
    repetitive = sweep + ["/api/chapters/0"] * 60

    hit = heuristics.check_endpoint_diversity(sweep, CONFIG)
    assert hit.triggered is True
    assert hit.weight == 10
    assert heuristics.check_endpoint_diversity(repetitive, CONFIG).triggered is False
    assert heuristics.check_endpoint_diversity(sweep[:50], CONFIG).triggered is False


def test_daily_volume_and_rate_hits() -> None:
    assert heuristics.check_daily_volume(501, CONFIG).weight == 10
    assert heuristics.check_daily_volume(500, CONFIG).triggered is False

    denied = RateDecision(allowed=False, remaining_ms=1000, count=60, limit=60)
    assert heuristics.check_ip_rate(denied, CONFIG).weight == 20
    assert heuristics.check_ip_rate(RateDecision(allowed=True, remaining_ms=0), CONFIG).triggered is False


def test_total_score_sums_triggered_weights() -> None:
    hits = [
        heuristics.check_reading_speed(_reads(1), NOON, CONFIG),
        heuristics.check_night_time(NOON, CONFIG),
        heuristics.HeuristicHit(check="x", triggered=True, weight=7, reason="x"),
    ]

    assert heuristics.total_score(hits) == 27
    assert len(heuristics.reasons_of(hits)) == 2


def test_local_day_start() -> None:
    start = heuristics.local_day_start(NOON, "UTC")

    assert start == NOON.replace(hour=0)
