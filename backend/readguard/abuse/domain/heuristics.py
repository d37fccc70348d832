"""Pure heuristic checks over activity log snapshots.

Every check returns a ``HeuristicHit``; none of them touch storage, so the
scorers can combine them freely and tests can drive them with plain tuples.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from readguard.abuse.domain.activity_log import ActivityEvent
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.rate_limiter import RateDecision


@dataclass(frozen=True, slots=True)
class HeuristicHit:
    check: str
    triggered: bool = False
    weight: int = 0
    reason: str | None = None


def _miss(check: str) -> HeuristicHit:
    return HeuristicHit(check=check)


def total_score(hits: Sequence[HeuristicHit]) -> int:
    return sum(hit.weight for hit in hits if hit.triggered)


def reasons_of(hits: Sequence[HeuristicHit]) -> list[str]:
    return [hit.reason for hit in hits if hit.triggered and hit.reason]


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_hour(now: datetime, tz_name: str) -> int:
    return now.astimezone(_zone(tz_name)).hour


def local_day_start(now: datetime, tz_name: str) -> datetime:
    """Midnight of the calendar day containing ``now``, as an aware datetime."""

    local = now.astimezone(_zone(tz_name))
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


# --- Reader checks ---------------------------------------------------------


def check_reading_speed(history: Sequence[ActivityEvent], now: datetime, config: DetectionConfig) -> HeuristicHit:
    if not history:
        return _miss("reading_speed")
    latest = max(event.timestamp for event in history)
    elapsed = now - latest
    if elapsed >= config.min_interval:
        return _miss("reading_speed")
    gap_ms = int(elapsed.total_seconds() * 1000)
    return HeuristicHit(
        check="reading_speed",
        triggered=True,
        weight=config.reading_speed_weight,
        reason=(
            f"Reading speed too fast: {round(gap_ms / 1000)}s between chapters "
            f"(min: {int(config.min_interval.total_seconds())}s)"
        ),
    )


def check_hourly_volume(history: Sequence[ActivityEvent], now: datetime, config: DetectionConfig) -> HeuristicHit:
    hour_ago = now.timestamp() - 3600
    count = sum(1 for event in history if event.timestamp.timestamp() > hour_ago) + 1
    if count <= config.max_chapters_per_hour:
        return _miss("hourly_volume")
    return HeuristicHit(
        check="hourly_volume",
        triggered=True,
        weight=config.hourly_volume_weight,
        reason=f"High volume: {count} chapters in the last hour (max: {config.max_chapters_per_hour})",
    )


def check_reading_sequence(
    history: Sequence[ActivityEvent],
    title_id: str,
    config: DetectionConfig,
) -> HeuristicHit:
    same_title = sum(1 for event in history if event.title_id == title_id)
    if same_title <= config.same_title_sequence_threshold:
        return _miss("reading_sequence")
    return HeuristicHit(
        check="reading_sequence",
        triggered=True,
        weight=config.sequence_weight,
        reason=f"Sequential reading: {same_title}+ chapters in a row without breaks",
    )


def check_night_time(now: datetime, config: DetectionConfig) -> HeuristicHit:
    hour = local_hour(now, config.local_timezone)
    if not (config.night_time_start <= hour < config.night_time_end):
        return _miss("night_time")
    return HeuristicHit(
        check="night_time",
        triggered=True,
        weight=config.night_time_score,
        reason=f"Nighttime activity: reading at {hour}:00",
    )


# --- Network address checks ------------------------------------------------


def check_ip_rate(decision: RateDecision, config: DetectionConfig) -> HeuristicHit:
    if decision.allowed:
        return _miss("rate_limit")
    return HeuristicHit(
        check="rate_limit",
        triggered=True,
        weight=config.ip_rate_limit_weight,
        reason=f"Rate limit exceeded: {decision.count} requests in window (limit: {decision.limit})",
    )


def check_daily_volume(requests_today: int, config: DetectionConfig) -> HeuristicHit:
    if requests_today <= config.ip_daily_request_threshold:
        return _miss("daily_volume")
    return HeuristicHit(
        check="daily_volume",
        triggered=True,
        weight=config.ip_daily_volume_weight,
        reason=f"High daily volume: {requests_today} requests today (max: {config.ip_daily_request_threshold})",
    )


def check_burst_frequency(timestamps: Sequence[datetime], config: DetectionConfig) -> HeuristicHit:
    """Mean inter-arrival over the most recent requests; the faster bucket wins."""

    sample = sorted(timestamps)[-config.ip_burst_sample_size:]
    if len(sample) < config.ip_burst_min_samples:
        return _miss("burst_frequency")
    span_ms = (sample[-1] - sample[0]).total_seconds() * 1000
    average_ms = span_ms / (len(sample) - 1)
    if average_ms < config.ip_min_interval_ms:
        return HeuristicHit(
            check="burst_frequency",
            triggered=True,
            weight=config.ip_fast_burst_weight,
            reason=f"Request burst: {round(average_ms)}ms average interval (min: {config.ip_min_interval_ms}ms)",
        )
    if average_ms < config.ip_slow_interval_ms:
        return HeuristicHit(
            check="burst_frequency",
            triggered=True,
            weight=config.ip_slow_burst_weight,
            reason=f"Rapid requests: {round(average_ms)}ms average interval",
        )
    return _miss("burst_frequency")


def check_endpoint_diversity(endpoints: Sequence[str | None], config: DetectionConfig) -> HeuristicHit:
    seen = [endpoint for endpoint in endpoints if endpoint]
    if not seen:
        return _miss("endpoint_diversity")
    unique = len(set(seen))
    ratio = unique / len(seen)
    if unique <= config.ip_unique_endpoint_threshold or ratio <= config.ip_unique_endpoint_ratio:
        return _miss("endpoint_diversity")
    return HeuristicHit(
        check="endpoint_diversity",
        triggered=True,
        weight=config.ip_endpoint_diversity_weight,
        reason=f"Endpoint sweep: {unique} unique endpoints across {len(seen)} requests",
    )
