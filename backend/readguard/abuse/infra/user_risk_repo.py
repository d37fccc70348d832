"""PostgreSQL repository for reader risk records."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

import asyncpg

from readguard.abuse.domain.activity_log import SuspiciousEntry
from readguard.abuse.domain.user_risk import UserBotStats, UserRiskRecord, UserRiskRepository

_TRIM_LOG = """
DELETE FROM abuse_user_suspicious_log
WHERE user_id = $1
  AND id NOT IN (
      SELECT id FROM abuse_user_suspicious_log
      WHERE user_id = $1
      ORDER BY occurred_at DESC, id DESC
      LIMIT $2
  )
"""


def _entry_from_row(row: asyncpg.Record) -> SuspiciousEntry:
    return SuspiciousEntry(
        score=int(row["score"]),
        timestamp=row["occurred_at"],
        reasons=tuple(row["reasons"] or ()),
        chapter_id=row["chapter_id"],
        title_id=row["title_id"],
        endpoint=row["endpoint"],
    )


def _record_from_row(row: asyncpg.Record, log: Iterable[SuspiciousEntry] = ()) -> UserRiskRecord:
    return UserRiskRecord(
        user_id=str(row["user_id"]),
        bot_score=int(row["bot_score"]),
        is_bot=bool(row["is_bot"]),
        is_suspicious=bool(row["is_suspicious"]),
        last_activity_at=row["last_activity_at"],
        suspicious_activity_log=list(log),
    )


class PostgresUserRiskRepository(UserRiskRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, user_id: str) -> UserRiskRecord | None:
        row = await self._pool.fetchrow(
            """
            SELECT user_id, bot_score, is_bot, is_suspicious, last_activity_at
            FROM abuse_user_risk
            WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        entries = await self._pool.fetch(
            """
            SELECT score, reasons, chapter_id, title_id, endpoint, occurred_at
            FROM abuse_user_suspicious_log
            WHERE user_id = $1
            ORDER BY occurred_at ASC, id ASC
            """,
            user_id,
        )
        return _record_from_row(row, (_entry_from_row(entry) for entry in entries))

    async def append_suspicious(self, user_id: str, entry: SuspiciousEntry, *, cap: int) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO abuse_user_risk (user_id, last_activity_at)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id)
                    DO UPDATE SET last_activity_at = EXCLUDED.last_activity_at, updated_at = now()
                    """,
                    user_id,
                    entry.timestamp,
                )
                await conn.execute(
                    """
                    INSERT INTO abuse_user_suspicious_log (user_id, score, reasons, chapter_id, title_id, endpoint, occurred_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    user_id,
                    entry.score,
                    list(entry.reasons),
                    entry.chapter_id,
                    entry.title_id,
                    entry.endpoint,
                    entry.timestamp,
                )
                await conn.execute(_TRIM_LOG, user_id, cap)

    async def update_status(
        self,
        user_id: str,
        *,
        is_bot: bool,
        is_suspicious: bool,
        bot_score: int,
        at: datetime,
    ) -> None:
        # Bots take the fresh score; suspicious readers accumulate it.
        await self._pool.execute(
            """
            INSERT INTO abuse_user_risk (user_id, is_bot, is_suspicious, bot_score, last_activity_at)
            VALUES ($1, $2, $3 AND NOT $2, CASE WHEN $2 OR $3 THEN $4 ELSE 0 END, $5)
            ON CONFLICT (user_id)
            DO UPDATE SET
                is_bot = abuse_user_risk.is_bot OR $2,
                bot_score = CASE
                    WHEN $2 THEN $4
                    WHEN $3 THEN abuse_user_risk.bot_score + $4
                    ELSE abuse_user_risk.bot_score
                END,
                is_suspicious = abuse_user_risk.is_suspicious OR ($3 AND NOT $2),
                last_activity_at = $5,
                updated_at = now()
            """,
            user_id,
            is_bot,
            is_suspicious,
            bot_score,
            at,
        )

    async def list_suspicious(self, *, limit: int, score_threshold: int) -> Sequence[UserRiskRecord]:
        rows = await self._pool.fetch(
            """
            SELECT user_id, bot_score, is_bot, is_suspicious, last_activity_at
            FROM abuse_user_risk
            WHERE is_bot OR is_suspicious OR bot_score > $2
            ORDER BY bot_score DESC, user_id ASC
            LIMIT $1
            """,
            limit,
            score_threshold,
        )
        if not rows:
            return []
        user_ids = [str(row["user_id"]) for row in rows]
        entries = await self._pool.fetch(
            """
            SELECT user_id, score, reasons, chapter_id, title_id, endpoint, occurred_at
            FROM abuse_user_suspicious_log
            WHERE user_id = ANY($1::text[])
            ORDER BY occurred_at ASC, id ASC
            """,
            user_ids,
        )
        logs: dict[str, list[SuspiciousEntry]] = {user_id: [] for user_id in user_ids}
        for entry in entries:
            logs[str(entry["user_id"])].append(_entry_from_row(entry))
        return [_record_from_row(row, logs[str(row["user_id"])]) for row in rows]

    async def reset(self, user_id: str) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO abuse_user_risk (user_id)
                    VALUES ($1)
                    ON CONFLICT (user_id)
                    DO UPDATE SET is_bot = FALSE, is_suspicious = FALSE, bot_score = 0, updated_at = now()
                    """,
                    user_id,
                )
                await conn.execute("DELETE FROM abuse_user_suspicious_log WHERE user_id = $1", user_id)

    async def stats(self) -> UserBotStats:
        row = await self._pool.fetchrow(
            """
            SELECT
                count(*) AS total_users,
                count(*) FILTER (WHERE is_suspicious AND NOT is_bot) AS suspected_bots,
                count(*) FILTER (WHERE is_bot) AS confirmed_bots,
                (SELECT count(DISTINCT user_id) FROM abuse_user_suspicious_log) AS recent_suspicious_activities
            FROM abuse_user_risk
            """
        )
        if row is None:  # pragma: no cover
            return UserBotStats(0, 0, 0, 0)
        return UserBotStats(
            total_users=int(row["total_users"]),
            suspected_bots=int(row["suspected_bots"]),
            confirmed_bots=int(row["confirmed_bots"]),
            recent_suspicious_activities=int(row["recent_suspicious_activities"]),
        )
