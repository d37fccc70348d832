"""Named thresholds, weights and durations for the abuse engine.

Values resolve in three layers: the defaults below, an optional YAML mapping,
then ``BOT_DETECTION_<FIELD>`` environment variables. Missing values fall back
silently; malformed ones are logged and ignored.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOT_DETECTION_"


@dataclass(frozen=True, slots=True)
class DetectionConfig:
    # User reading heuristics
    min_time_between_chapters_ms: int = 10_000
    max_chapters_per_hour: int = 100
    same_title_sequence_threshold: int = 10
    bot_score_threshold: int = 80
    suspicious_score_threshold: int = 50
    reading_speed_weight: int = 20
    hourly_volume_weight: int = 30
    sequence_weight: int = 15

    # Off-hours window [start, end) and calendar days are read in local_timezone
    night_time_start: int = 2
    night_time_end: int = 6
    night_time_score: int = 10
    local_timezone: str = "UTC"

    # Rate limiting tiers (requests per window)
    rate_limit_normal: int = 60
    rate_limit_suspicious: int = 10
    rate_limit_anonymous: int = 50
    rate_limit_window_ms: int = 60_000

    # IP blocking
    ip_block_threshold: int = 100
    ip_suspicious_threshold: int = 50
    ip_block_duration_ms: int = 3_600_000
    ip_daily_request_threshold: int = 500
    ip_min_interval_ms: int = 500
    ip_slow_interval_ms: int = 1_000
    ip_burst_sample_size: int = 20
    ip_burst_min_samples: int = 5
    ip_unique_endpoint_threshold: int = 50
    ip_unique_endpoint_ratio: float = 0.8
    ip_rate_limit_weight: int = 20
    ip_daily_volume_weight: int = 10
    ip_fast_burst_weight: int = 25
    ip_slow_burst_weight: int = 15
    ip_endpoint_diversity_weight: int = 10

    # Log retention
    max_user_activity_history: int = 1_000
    max_ip_activity_log: int = 500
    max_suspicious_log_entries: int = 100
    activity_history_ttl_hours: int = 24

    @property
    def min_interval(self) -> timedelta:
        return timedelta(milliseconds=self.min_time_between_chapters_ms)

    @property
    def rate_window(self) -> timedelta:
        return timedelta(milliseconds=self.rate_limit_window_ms)

    @property
    def ip_block_duration(self) -> timedelta:
        return timedelta(milliseconds=self.ip_block_duration_ms)

    @property
    def history_retention(self) -> timedelta:
        return timedelta(hours=self.activity_history_ttl_hours)


_FIELD_TYPES: dict[str, type] = {
    item.name: type(getattr(DetectionConfig(), item.name)) for item in fields(DetectionConfig)
}


def _coerce(name: str, raw: Any) -> Any:
    target = _FIELD_TYPES[name]
    if target is bool:  # pragma: no cover - no bool knobs yet
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    if target is int:
        if isinstance(raw, bool):
            raise ValueError("boolean is not an integer")
        if isinstance(raw, str):
            raw = raw.strip()
        number = float(raw)
        if not number.is_integer():
            raise ValueError("expected an integer")
        return int(number)
    if target is float:
        return float(raw)
    return str(raw)


def _apply(config: DetectionConfig, overrides: Mapping[str, Any], *, source: str) -> DetectionConfig:
    changes: dict[str, Any] = {}
    for key, raw in overrides.items():
        name = str(key).strip().lower()
        if name not in _FIELD_TYPES:
            logger.debug("unknown detection config key", extra={"key": key, "source": source})
            continue
        if raw is None or raw == "":
            continue
        try:
            changes[name] = _coerce(name, raw)
        except (TypeError, ValueError):
            logger.warning(
                "ignoring malformed detection config value",
                extra={"key": name, "value": raw, "source": source},
            )
    return replace(config, **changes) if changes else config


def load_detection_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> DetectionConfig:
    config = DetectionConfig()
    if path is not None:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("detection config must be a mapping")
        section = loaded.get("detection", loaded)
        if isinstance(section, dict):
            config = _apply(config, section, source=str(path))
    env = os.environ if environ is None else environ
    env_overrides = {
        key[len(ENV_PREFIX):]: value for key, value in env.items() if key.upper().startswith(ENV_PREFIX)
    }
    if env_overrides:
        config = _apply(config, env_overrides, source="env")
    return config
