from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from readguard.abuse.domain.config import DetectionConfig, load_detection_config


def test_defaults_without_sources() -> None:
    config = load_detection_config(environ={})

    assert config == DetectionConfig()
    assert config.min_interval == timedelta(seconds=10)
    assert config.ip_block_duration == timedelta(hours=1)
    assert config.rate_limit_anonymous == 50


def test_yaml_then_env_overlay(tmp_path) -> None:
    path = tmp_path / "abuse.yml"
    path.write_text(
        "detection:\n"
        "  max_chapters_per_hour: 40\n"
        "  rate_limit_normal: 30\n"
        "  local_timezone: Europe/Berlin\n",
        encoding="utf-8",
    )

    config = load_detection_config(path, environ={"BOT_DETECTION_RATE_LIMIT_NORMAL": "45"})

    assert config.max_chapters_per_hour == 40
    assert config.rate_limit_normal == 45
    assert config.local_timezone == "Europe/Berlin"


def test_flat_yaml_mapping_is_accepted(tmp_path) -> None:
    path = tmp_path / "flat.yml"
    path.write_text("ip_block_threshold: 120\n", encoding="utf-8")

    assert load_detection_config(path, environ={}).ip_block_threshold == 120


def test_malformed_values_are_logged_and_ignored(caplog) -> None:
    env = {
        "BOT_DETECTION_MAX_CHAPTERS_PER_HOUR": "lots",
        "BOT_DETECTION_IP_UNIQUE_ENDPOINT_RATIO": "0.9",
        "BOT_DETECTION_UNKNOWN_KNOB": "1",
        "BOT_DETECTION_NIGHT_TIME_START": "",
    }
    with caplog.at_level(logging.WARNING, logger="readguard.abuse.domain.config"):
        config = load_detection_config(environ=env)

    assert config.max_chapters_per_hour == 100
    assert config.ip_unique_endpoint_ratio == 0.9
    assert config.night_time_start == 2
    assert any("malformed" in record.getMessage() for record in caplog.records)


def test_fractional_integer_is_rejected() -> None:
    config = load_detection_config(environ={"BOT_DETECTION_RATE_LIMIT_SUSPICIOUS": "7.5"})

    assert config.rate_limit_suspicious == 10


def test_shipped_yaml_matches_defaults() -> None:
    shipped = Path(__file__).resolve().parents[2] / "config" / "abuse.yml"

    assert load_detection_config(shipped, environ={}) == DetectionConfig()
