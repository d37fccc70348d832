"""Entry points the request path and admin tooling call into."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Coroutine, Sequence

from readguard.abuse.domain.activity_log import ActivityEvent, SuspiciousEntry
from readguard.abuse.domain.clock import Clock, SystemClock
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.errors import require_identifier
from readguard.abuse.domain.history import ActivityHistoryStore, InMemoryActivityHistory
from readguard.abuse.domain.ip_risk import IpRiskRecord, IpRiskRepository, IpStats
from readguard.abuse.domain.ip_tracker import IpActivityTracker, IpCheckResult
from readguard.abuse.domain.rate_limiter import RateDecision
from readguard.abuse.domain.store_guard import StoreGuard
from readguard.abuse.domain.user_risk import UserBotStats, UserRiskRecord, UserRiskRepository
from readguard.abuse.domain.user_scorer import BotDetectionResult, UserActivityScorer
from readguard.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class VerdictService:
    """Owns the reader history store and the pending audit writes.

    ``check_user_activity`` and ``check_ip_activity`` are the request-path
    contracts; both fail open when the store misbehaves. Management calls
    propagate store errors so admin tooling sees them.
    """

    def __init__(
        self,
        *,
        user_repository: UserRiskRepository,
        ip_repository: IpRiskRepository,
        history: ActivityHistoryStore | None = None,
        config: DetectionConfig | None = None,
        clock: Clock | None = None,
        store_timeout_seconds: float | None = None,
    ) -> None:
        self.config = config or DetectionConfig()
        self.clock = clock or SystemClock()
        self.guard = StoreGuard(store_timeout_seconds)
        self.history = history or InMemoryActivityHistory(
            capacity=self.config.max_user_activity_history,
            retention=self.config.history_retention,
        )
        self.users = user_repository
        self.scorer = UserActivityScorer(self.history, config=self.config, clock=self.clock, guard=self.guard)
        self.ips = IpActivityTracker(ip_repository, config=self.config, clock=self.clock, guard=self.guard)
        self._pending: set[asyncio.Task[None]] = set()

    # --- Readers ---------------------------------------------------------

    async def check_user_activity(self, user_id: str, chapter_id: str, title_id: str) -> BotDetectionResult:
        result, now = await self.scorer.check_activity(user_id, chapter_id, title_id)
        for check in result.checks:
            obs_metrics.inc_heuristic_hit("user", check)
        if result.is_bot:
            obs_metrics.inc_user_check("bot")
        elif result.is_suspicious:
            obs_metrics.inc_user_check("suspicious")
        else:
            obs_metrics.inc_user_check("clean")
        if result.is_suspicious:
            logger.warning(
                "suspicious reading activity",
                extra={"user_id": user_id, "bot_score": result.bot_score, "reasons": result.reasons},
            )
            self._dispatch(
                self._persist_user_verdict(user_id.strip(), chapter_id.strip(), title_id.strip(), result, now),
                name=f"abuse-audit:{user_id}",
            )
        return result

    async def _persist_user_verdict(
        self,
        user_id: str,
        chapter_id: str,
        title_id: str,
        result: BotDetectionResult,
        now: datetime,
    ) -> None:
        entry = SuspiciousEntry(
            score=result.bot_score,
            timestamp=now,
            reasons=tuple(result.reasons),
            chapter_id=chapter_id,
            title_id=title_id,
        )
        await self.guard.call(
            "user.append_suspicious",
            lambda: self.users.append_suspicious(user_id, entry, cap=self.config.max_suspicious_log_entries),
            default=None,
        )
        await self.update_bot_status(user_id, result, at=now)

    async def update_bot_status(self, user_id: str, result: BotDetectionResult, *, at: datetime | None = None) -> None:
        user_id = require_identifier("user_id", user_id)
        await self.guard.call(
            "user.update_status",
            lambda: self.users.update_status(
                user_id,
                is_bot=result.is_bot,
                is_suspicious=result.is_suspicious,
                bot_score=result.bot_score,
                at=at or self.clock.now(),
            ),
            default=None,
        )

    async def check_user_rate_limit(self, user_id: str) -> RateDecision:
        return await self.scorer.check_rate_limit(user_id)

    async def rate_limit_for_user(self, user_id: str) -> int:
        return await self.scorer.rate_limit_for_user(require_identifier("user_id", user_id))

    async def get_suspicious_users(self, limit: int = 50) -> Sequence[UserRiskRecord]:
        return await self.users.list_suspicious(limit=limit, score_threshold=self.config.suspicious_score_threshold)

    async def reset_user(self, user_id: str) -> None:
        user_id = require_identifier("user_id", user_id)
        await self.users.reset(user_id)
        await self.history.clear(user_id)
        logger.info("reader bot status reset", extra={"user_id": user_id})

    async def get_bot_stats(self) -> UserBotStats:
        return await self.users.stats()

    async def get_user_record(self, user_id: str) -> UserRiskRecord | None:
        return await self.users.get(require_identifier("user_id", user_id))

    async def memory_history(self, user_id: str) -> list[ActivityEvent]:
        return await self.scorer.memory_history(require_identifier("user_id", user_id))

    async def clear_memory_history(self) -> None:
        await self.scorer.clear_memory_history()

    # --- Network addresses -----------------------------------------------

    async def check_ip_activity(
        self,
        ip_address: str,
        endpoint: str,
        method: str,
        user_agent: str | None = None,
        *,
        anonymous: bool = False,
    ) -> IpCheckResult:
        return await self.ips.check_ip_activity(ip_address, endpoint, method, user_agent, anonymous=anonymous)

    async def can_make_request(
        self,
        ip_address: str,
        *,
        endpoint: str | None = None,
        anonymous: bool = False,
    ) -> IpCheckResult:
        return await self.ips.can_make_request(ip_address, endpoint=endpoint, anonymous=anonymous)

    async def get_blocked_ips(self, limit: int = 100) -> Sequence[IpRiskRecord]:
        return await self.ips.repository.list_blocked(self.clock.now(), limit=limit)

    async def get_suspicious_ips(self, limit: int = 100) -> Sequence[IpRiskRecord]:
        return await self.ips.repository.list_suspicious(limit=limit)

    async def get_ip_stats(self) -> IpStats:
        return await self.ips.repository.stats(self.clock.now())

    async def get_ip_record(self, ip_address: str) -> IpRiskRecord | None:
        return await self.ips.repository.get(require_identifier("ip_address", ip_address))

    async def block_ip(self, ip_address: str, reason: str, duration_minutes: int) -> IpRiskRecord | None:
        return await self.ips.block_ip(ip_address, reason, duration_minutes)

    async def unblock_ip(self, ip_address: str) -> bool:
        return await self.ips.unblock_ip(ip_address)

    async def reset_ip_activity(self, ip_address: str) -> bool:
        return await self.ips.reset_ip_activity(ip_address)

    async def whitelist_endpoint(self, ip_address: str, endpoint: str) -> None:
        await self.ips.whitelist_endpoint(ip_address, endpoint)

    # --- Background audit writes -----------------------------------------

    def _dispatch(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_audit_done)

    def _on_audit_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            obs_metrics.inc_store_failure("user.audit")
            logger.error("abuse audit write failed", extra={"task": task.get_name()}, exc_info=exc)

    @property
    def pending_audits(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for audit writes dispatched so far."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
