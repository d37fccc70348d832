"""Bot-likelihood scoring for chapter reads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from readguard.abuse.domain import heuristics
from readguard.abuse.domain.activity_log import ActivityEvent
from readguard.abuse.domain.clock import Clock, SystemClock
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.errors import require_identifier
from readguard.abuse.domain.history import ActivityHistoryStore
from readguard.abuse.domain.rate_limiter import RateDecision, TrustTier, check_rate, limit_for_tier
from readguard.abuse.domain.store_guard import StoreGuard


@dataclass(frozen=True, slots=True)
class BotDetectionResult:
    is_bot: bool
    is_suspicious: bool
    bot_score: int
    reasons: list[str] = field(default_factory=list)
    checks: tuple[str, ...] = ()


def score_reading(
    history: Sequence[ActivityEvent],
    *,
    title_id: str,
    now: datetime,
    config: DetectionConfig,
) -> BotDetectionResult:
    """Run the four reader checks against a pruned history snapshot."""

    hits = [
        heuristics.check_reading_speed(history, now, config),
        heuristics.check_hourly_volume(history, now, config),
        heuristics.check_reading_sequence(history, title_id, config),
        heuristics.check_night_time(now, config),
    ]
    score = heuristics.total_score(hits)
    return BotDetectionResult(
        is_bot=score >= config.bot_score_threshold,
        is_suspicious=score >= config.suspicious_score_threshold,
        bot_score=score,
        reasons=heuristics.reasons_of(hits),
        checks=tuple(hit.check for hit in hits if hit.triggered),
    )


class UserActivityScorer:
    """Scores reads against the reader's recent history, then records the read."""

    def __init__(
        self,
        history: ActivityHistoryStore,
        *,
        config: DetectionConfig | None = None,
        clock: Clock | None = None,
        guard: StoreGuard | None = None,
    ) -> None:
        self._history = history
        self._config = config or DetectionConfig()
        self._clock = clock or SystemClock()
        self._guard = guard or StoreGuard()

    @property
    def config(self) -> DetectionConfig:
        return self._config

    async def _load(self, user_id: str, now: datetime) -> list[ActivityEvent]:
        return await self._guard.call("history.load", lambda: self._history.load(user_id, now), default=[])

    async def check_activity(self, user_id: str, chapter_id: str, title_id: str) -> tuple[BotDetectionResult, datetime]:
        user_id = require_identifier("user_id", user_id)
        chapter_id = require_identifier("chapter_id", chapter_id)
        title_id = require_identifier("title_id", title_id)
        async with self._history.lock(user_id):
            now = self._clock.now()
            history = await self._load(user_id, now)
            result = score_reading(history, title_id=title_id, now=now, config=self._config)
            event = ActivityEvent(subject_id=user_id, timestamp=now, chapter_id=chapter_id, title_id=title_id)
            await self._guard.call("history.append", lambda: self._history.append(user_id, event), default=None)
        return result, now

    def _tier_for(self, history: Sequence[ActivityEvent]) -> TrustTier:
        # More logged reads than half the hourly allowance earns the stricter limit.
        if len(history) > self._config.max_chapters_per_hour / 2:
            return TrustTier.SUSPICIOUS
        return TrustTier.NORMAL

    async def check_rate_limit(self, user_id: str) -> RateDecision:
        user_id = require_identifier("user_id", user_id)
        now = self._clock.now()
        history = await self._load(user_id, now)
        return check_rate(
            history,
            now,
            limit=limit_for_tier(self._tier_for(history), self._config),
            window=self._config.rate_window,
        )

    async def rate_limit_for_user(self, user_id: str) -> int:
        """Recommended per-window limit given the reader's last-minute pace."""

        now = self._clock.now()
        history = await self._load(user_id, now)
        start = now - self._config.rate_window
        recent = sum(1 for event in history if event.timestamp > start) + 1
        if recent > self._config.max_chapters_per_hour / 10:
            return self._config.rate_limit_suspicious
        return self._config.rate_limit_normal

    async def memory_history(self, user_id: str) -> list[ActivityEvent]:
        return await self._history.load(user_id, self._clock.now())

    async def clear_memory_history(self) -> None:
        await self._history.clear()
