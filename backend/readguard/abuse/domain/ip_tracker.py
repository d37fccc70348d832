"""Per-address request scoring and the block/unblock state machine.

Each address is in one of three block states (see ``BlockState``). An active
block short-circuits every check without running heuristics; an expired one
is cleared by a conditional update and the same call then re-evaluates. The
stored score only ever rises until the block is lifted or reset, and crossing
the block threshold triggers a compare-and-set so concurrent requests block at most once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from readguard.abuse.domain import heuristics
from readguard.abuse.domain.activity_log import ActivityEvent, SuspiciousEntry
from readguard.abuse.domain.clock import Clock, SystemClock
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.errors import require_identifier
from readguard.abuse.domain.ip_risk import (
    BlockState,
    IpRiskRecord,
    IpRiskRepository,
    apply_request,
    clear_block,
)
from readguard.abuse.domain.rate_limiter import RateDecision, TrustTier, check_rate, limit_for_tier
from readguard.abuse.domain.store_guard import StoreGuard
from readguard.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASON = "IP address is temporarily blocked"
AUTO_BLOCK_REASON = "Automatic block: automated traffic detected"


@dataclass(frozen=True, slots=True)
class IpCheckResult:
    allowed: bool
    is_blocked: bool
    is_suspicious: bool
    bot_score: int
    remaining_ms: int = 0
    reasons: list[str] = field(default_factory=list)
    block_reason: str | None = None


def tier_for_record(record: IpRiskRecord, *, anonymous: bool = False) -> TrustTier:
    if record.is_suspicious:
        return TrustTier.SUSPICIOUS
    if anonymous:
        return TrustTier.ANONYMOUS
    return TrustTier.NORMAL


def _without(log: Sequence[ActivityEvent], event: ActivityEvent) -> list[ActivityEvent]:
    """Drop the most recent occurrence of ``event`` from ``log``."""

    entries = list(log)
    for index in range(len(entries) - 1, -1, -1):
        if entries[index] == event:
            del entries[index]
            break
    return entries


def score_request(
    record: IpRiskRecord,
    event: ActivityEvent,
    *,
    tier: TrustTier,
    config: DetectionConfig,
) -> tuple[list[heuristics.HeuristicHit], RateDecision]:
    """Run the address checks against a record that already counts ``event``.

    The rate check looks at the requests before this one; the pattern checks
    see the whole log including it.
    """

    now = event.timestamp
    prior = _without(record.activity_log, event)
    decision = check_rate(prior, now, limit=limit_for_tier(tier, config), window=config.rate_window)
    log = record.activity_log
    hits = [
        heuristics.check_ip_rate(decision, config),
        heuristics.check_daily_volume(record.requests_today, config),
        heuristics.check_burst_frequency([entry.timestamp for entry in log], config),
        heuristics.check_endpoint_diversity([entry.endpoint for entry in log], config),
        heuristics.check_night_time(now, config),
    ]
    return hits, decision


def _remaining_ms(until: datetime | None, now: datetime, fallback: timedelta) -> int:
    if until is None:
        return int(fallback.total_seconds() * 1000)
    return max(0, int((until - now).total_seconds() * 1000))


class IpActivityTracker:
    def __init__(
        self,
        repository: IpRiskRepository,
        *,
        config: DetectionConfig | None = None,
        clock: Clock | None = None,
        guard: StoreGuard | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or DetectionConfig()
        self._clock = clock or SystemClock()
        self._guard = guard or StoreGuard()

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @property
    def repository(self) -> IpRiskRepository:
        return self._repository

    def _blocked_result(self, record: IpRiskRecord, now: datetime) -> IpCheckResult:
        reason = record.blocked_reason or DEFAULT_BLOCK_REASON
        return IpCheckResult(
            allowed=False,
            is_blocked=True,
            is_suspicious=record.is_suspicious,
            bot_score=record.bot_score,
            remaining_ms=_remaining_ms(record.blocked_until, now, self._config.ip_block_duration),
            reasons=[reason],
            block_reason=reason,
        )

    async def _record(self, record: IpRiskRecord, event: ActivityEvent) -> IpRiskRecord:
        day_start = heuristics.local_day_start(event.timestamp, self._config.local_timezone)
        updated = await self._guard.call(
            "ip.record_request",
            lambda: self._repository.record_request(
                record.ip_address,
                event,
                day_start=day_start,
                minute_window=self._config.rate_window,
                log_cap=self._config.max_ip_activity_log,
            ),
            default=None,
        )
        if updated is not None:
            return updated
        # Store unavailable: carry on with the counters this call would have written.
        local = record.copy()
        apply_request(
            local,
            event,
            day_start=day_start,
            minute_window=self._config.rate_window,
            log_cap=self._config.max_ip_activity_log,
        )
        return local

    async def check_ip_activity(
        self,
        ip_address: str,
        endpoint: str,
        method: str,
        user_agent: str | None = None,
        *,
        anonymous: bool = False,
    ) -> IpCheckResult:
        ip_address = require_identifier("ip_address", ip_address)
        endpoint = require_identifier("endpoint", endpoint)
        method = require_identifier("method", method).upper()
        now = self._clock.now()
        stored = await self._guard.call("ip.get", lambda: self._repository.get(ip_address), default=None)
        record = stored or IpRiskRecord(ip_address=ip_address, first_seen_at=now)
        event = ActivityEvent(
            subject_id=ip_address,
            timestamp=now,
            endpoint=endpoint,
            method=method,
            user_agent=user_agent or None,
        )

        state = record.block_state(now)
        if state is BlockState.BLOCKED_ACTIVE:
            await self._record(record, event)
            obs_metrics.inc_ip_check("blocked")
            return self._blocked_result(record, now)
        if state is BlockState.BLOCKED_EXPIRED:
            await self._guard.call(
                "ip.clear_expired_block",
                lambda: self._repository.clear_expired_block(ip_address, now),
                default=False,
            )
            clear_block(record)
            record.bot_score = 0
            obs_metrics.inc_ip_unblock("expired")
            logger.info("ip block expired", extra={"ip_address": ip_address})

        tier = tier_for_record(record, anonymous=anonymous)
        updated = await self._record(record, event)
        if updated.block_state(now) is BlockState.BLOCKED_EXPIRED:
            clear_block(updated)
            updated.bot_score = 0
        if updated.block_state(now) is BlockState.BLOCKED_ACTIVE:
            # Someone else blocked the address between our read and write.
            obs_metrics.inc_ip_check("blocked")
            return self._blocked_result(updated, now)
        if updated.is_whitelisted(endpoint):
            obs_metrics.inc_ip_check("whitelisted")
            return IpCheckResult(
                allowed=True,
                is_blocked=False,
                is_suspicious=updated.is_suspicious,
                bot_score=updated.bot_score,
            )

        hits, decision = score_request(updated, event, tier=tier, config=self._config)
        score = heuristics.total_score(hits)
        reasons = heuristics.reasons_of(hits)
        for hit in hits:
            if hit.triggered:
                obs_metrics.inc_heuristic_hit("ip", hit.check)
        entry = None
        if score > 0:
            entry = SuspiciousEntry(score=score, timestamp=now, reasons=tuple(reasons), endpoint=endpoint)
        scored = await self._guard.call(
            "ip.apply_score",
            lambda: self._repository.apply_score(
                ip_address,
                score=score,
                suspicious_threshold=self._config.ip_suspicious_threshold,
                entry=entry,
                cap=self._config.max_suspicious_log_entries,
            ),
            default=None,
        )
        if scored is not None:
            bot_score = scored.bot_score
            is_suspicious = scored.is_suspicious
        else:
            bot_score = max(updated.bot_score, score)
            is_suspicious = updated.is_suspicious or bot_score >= self._config.ip_suspicious_threshold

        if bot_score >= self._config.ip_block_threshold:
            block_reason = AUTO_BLOCK_REASON
            blocked_until = now + self._config.ip_block_duration
            transitioned = await self._guard.call(
                "ip.try_block",
                lambda: self._repository.try_block(
                    ip_address,
                    reason=block_reason,
                    blocked_at=now,
                    blocked_until=blocked_until,
                ),
                default=False,
            )
            if transitioned:
                obs_metrics.inc_ip_block("auto")
                logger.warning(
                    "ip blocked automatically",
                    extra={"ip_address": ip_address, "bot_score": bot_score, "reasons": reasons},
                )
            else:
                current = await self._guard.call("ip.get", lambda: self._repository.get(ip_address), default=None)
                if current is not None and current.block_state(now) is BlockState.BLOCKED_ACTIVE:
                    obs_metrics.inc_ip_check("blocked")
                    return self._blocked_result(current, now)
            obs_metrics.inc_ip_check("blocked")
            return IpCheckResult(
                allowed=False,
                is_blocked=True,
                is_suspicious=True,
                bot_score=bot_score,
                remaining_ms=_remaining_ms(blocked_until, now, self._config.ip_block_duration),
                reasons=reasons,
                block_reason=block_reason,
            )

        if score > 0:
            logger.info(
                "suspicious ip activity",
                extra={"ip_address": ip_address, "score": score, "bot_score": bot_score, "reasons": reasons},
            )
        obs_metrics.inc_ip_check("allowed" if decision.allowed else "rate_limited")
        return IpCheckResult(
            allowed=decision.allowed,
            is_blocked=False,
            is_suspicious=is_suspicious,
            bot_score=bot_score,
            remaining_ms=decision.remaining_ms,
            reasons=reasons,
        )

    async def can_make_request(
        self,
        ip_address: str,
        *,
        endpoint: str | None = None,
        anonymous: bool = False,
    ) -> IpCheckResult:
        """Pre-flight verdict from stored state only. Never writes."""

        ip_address = require_identifier("ip_address", ip_address)
        now = self._clock.now()
        record = await self._guard.call("ip.get", lambda: self._repository.get(ip_address), default=None)
        if record is None:
            return IpCheckResult(allowed=True, is_blocked=False, is_suspicious=False, bot_score=0)
        if record.block_state(now) is BlockState.BLOCKED_ACTIVE:
            return self._blocked_result(record, now)
        if endpoint and record.is_whitelisted(endpoint):
            return IpCheckResult(
                allowed=True,
                is_blocked=False,
                is_suspicious=record.is_suspicious,
                bot_score=record.bot_score,
            )
        tier = tier_for_record(record, anonymous=anonymous)
        decision = check_rate(
            record.activity_log,
            now,
            limit=limit_for_tier(tier, self._config),
            window=self._config.rate_window,
        )
        reasons = [] if decision.allowed else [heuristics.check_ip_rate(decision, self._config).reason or ""]
        return IpCheckResult(
            allowed=decision.allowed,
            is_blocked=False,
            is_suspicious=record.is_suspicious,
            bot_score=record.bot_score,
            remaining_ms=decision.remaining_ms,
            reasons=reasons,
        )

    # Manual operations propagate store errors to the admin caller.

    async def block_ip(self, ip_address: str, reason: str, duration_minutes: int) -> IpRiskRecord | None:
        ip_address = require_identifier("ip_address", ip_address)
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        now = self._clock.now()
        await self._repository.block(
            ip_address,
            reason=(reason or "").strip() or "Manual block",
            blocked_at=now,
            blocked_until=now + timedelta(minutes=duration_minutes),
        )
        obs_metrics.inc_ip_block("manual")
        logger.warning(
            "ip blocked manually",
            extra={"ip_address": ip_address, "reason": reason, "duration_minutes": duration_minutes},
        )
        return await self._repository.get(ip_address)

    async def unblock_ip(self, ip_address: str) -> bool:
        ip_address = require_identifier("ip_address", ip_address)
        changed = await self._repository.unblock(ip_address)
        if changed:
            obs_metrics.inc_ip_unblock("manual")
            logger.info("ip unblocked", extra={"ip_address": ip_address})
        return changed

    async def reset_ip_activity(self, ip_address: str) -> bool:
        ip_address = require_identifier("ip_address", ip_address)
        changed = await self._repository.reset(ip_address)
        if changed:
            logger.info("ip activity reset", extra={"ip_address": ip_address})
        return changed

    async def whitelist_endpoint(self, ip_address: str, endpoint: str) -> None:
        ip_address = require_identifier("ip_address", ip_address)
        endpoint = require_identifier("endpoint", endpoint)
        await self._repository.whitelist_endpoint(ip_address, endpoint, now=self._clock.now())
        logger.info("ip endpoint whitelisted", extra={"ip_address": ip_address, "endpoint": endpoint})
