from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from readguard.abuse.domain.activity_log import ActivityEvent, BoundedActivityLog, SuspiciousEntry, capped

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _event(seconds: float, subject: str = "u1") -> ActivityEvent:
    return ActivityEvent(subject_id=subject, timestamp=T0 + timedelta(seconds=seconds))


def test_capacity_evicts_oldest_first() -> None:
    log: BoundedActivityLog[ActivityEvent] = BoundedActivityLog(3)
    for second in range(5):
        log.append(_event(second))

    assert len(log) == 3
    assert [event.timestamp for event in log] == [T0 + timedelta(seconds=s) for s in (2, 3, 4)]


def test_retention_prunes_on_read() -> None:
    log: BoundedActivityLog[ActivityEvent] = BoundedActivityLog(10, retention=timedelta(hours=24))
    log.append(_event(0))
    log.append(_event(3600))

    snapshot = log.snapshot(T0 + timedelta(hours=24, seconds=1))

    assert [event.timestamp for event in snapshot] == [T0 + timedelta(seconds=3600)]
    assert len(log) == 1


def test_late_arrival_keeps_order() -> None:
    log: BoundedActivityLog[ActivityEvent] = BoundedActivityLog(10)
    log.append(_event(10))
    log.append(_event(30))
    log.append(_event(20))

    assert [event.timestamp.second for event in log] == [10, 20, 30]
    assert log.last() == _event(30)


def test_snapshot_does_not_expose_internal_list() -> None:
    log: BoundedActivityLog[ActivityEvent] = BoundedActivityLog(2, entries=[_event(1)])
    snapshot = log.snapshot()
    log.append(_event(2))

    assert len(snapshot) == 1
    assert len(log) == 2


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BoundedActivityLog(0)


def test_capped_helper_matches_log_rule() -> None:
    entries = [SuspiciousEntry(score=i, timestamp=T0 + timedelta(seconds=i)) for i in range(100)]
    result = capped(entries, SuspiciousEntry(score=100, timestamp=T0 + timedelta(seconds=100)), 100)

    assert len(result) == 100
    assert result[0].score == 1
    assert result[-1].score == 100
    assert len(entries) == 100
