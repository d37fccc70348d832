"""PostgreSQL repository for network address risk records.

Counters move with ``col = col + 1``, the score with ``GREATEST`` and block
transitions with conditional updates, so concurrent requests for one address
never lose an increment or block twice. Log appends insert then trim inside
one transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import asyncpg

from readguard.abuse.domain.activity_log import ActivityEvent, SuspiciousEntry
from readguard.abuse.domain.ip_risk import IpRiskRecord, IpRiskRepository, IpStats

_COLUMNS = """
    ip_address, bot_score, is_suspicious, is_blocked, blocked_at, blocked_until, blocked_reason,
    total_requests, requests_today, requests_last_minute, last_rate_limit_reset,
    minute_window_started_at, last_request_at, first_seen_at, user_agent, whitelisted_endpoints
"""

_TRIM_ACTIVITY = """
DELETE FROM abuse_ip_activity_log
WHERE ip_address = $1
  AND id NOT IN (
      SELECT id FROM abuse_ip_activity_log
      WHERE ip_address = $1
      ORDER BY occurred_at DESC, id DESC
      LIMIT $2
  )
"""

_TRIM_SUSPICIOUS = """
DELETE FROM abuse_ip_suspicious_log
WHERE ip_address = $1
  AND id NOT IN (
      SELECT id FROM abuse_ip_suspicious_log
      WHERE ip_address = $1
      ORDER BY occurred_at DESC, id DESC
      LIMIT $2
  )
"""


def _record_from_row(
    row: asyncpg.Record,
    activity: list[ActivityEvent] | None = None,
    suspicious: list[SuspiciousEntry] | None = None,
) -> IpRiskRecord:
    return IpRiskRecord(
        ip_address=str(row["ip_address"]),
        bot_score=int(row["bot_score"]),
        is_suspicious=bool(row["is_suspicious"]),
        is_blocked=bool(row["is_blocked"]),
        blocked_at=row["blocked_at"],
        blocked_until=row["blocked_until"],
        blocked_reason=row["blocked_reason"],
        total_requests=int(row["total_requests"]),
        requests_today=int(row["requests_today"]),
        requests_last_minute=int(row["requests_last_minute"]),
        last_rate_limit_reset=row["last_rate_limit_reset"],
        minute_window_started_at=row["minute_window_started_at"],
        last_request_at=row["last_request_at"],
        first_seen_at=row["first_seen_at"],
        user_agent=row["user_agent"],
        activity_log=activity or [],
        suspicious_activity_log=suspicious or [],
        whitelisted_endpoints=list(row["whitelisted_endpoints"] or ()),
    )


class PostgresIpRiskRepository(IpRiskRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def _load(self, conn: asyncpg.Connection, ip_address: str) -> IpRiskRecord | None:
        row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM abuse_ip_risk WHERE ip_address = $1", ip_address)
        if row is None:
            return None
        activity_rows = await conn.fetch(
            """
            SELECT endpoint, method, user_agent, occurred_at
            FROM abuse_ip_activity_log
            WHERE ip_address = $1
            ORDER BY occurred_at ASC, id ASC
            """,
            ip_address,
        )
        suspicious_rows = await conn.fetch(
            """
            SELECT score, reasons, endpoint, occurred_at
            FROM abuse_ip_suspicious_log
            WHERE ip_address = $1
            ORDER BY occurred_at ASC, id ASC
            """,
            ip_address,
        )
        activity = [
            ActivityEvent(
                subject_id=ip_address,
                timestamp=item["occurred_at"],
                endpoint=item["endpoint"],
                method=item["method"],
                user_agent=item["user_agent"],
            )
            for item in activity_rows
        ]
        suspicious = [
            SuspiciousEntry(
                score=int(item["score"]),
                timestamp=item["occurred_at"],
                reasons=tuple(item["reasons"] or ()),
                endpoint=item["endpoint"],
            )
            for item in suspicious_rows
        ]
        return _record_from_row(row, activity, suspicious)

    async def get(self, ip_address: str) -> IpRiskRecord | None:
        async with self._pool.acquire() as conn:
            return await self._load(conn, ip_address)

    async def record_request(
        self,
        ip_address: str,
        event: ActivityEvent,
        *,
        day_start: datetime,
        minute_window: timedelta,
        log_cap: int,
    ) -> IpRiskRecord:
        now = event.timestamp
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO abuse_ip_risk (
                        ip_address, first_seen_at, total_requests, requests_today, requests_last_minute,
                        last_rate_limit_reset, minute_window_started_at, last_request_at, user_agent
                    )
                    VALUES ($1, $2, 1, 1, 1, $2, $2, $2, $3)
                    ON CONFLICT (ip_address)
                    DO UPDATE SET
                        total_requests = abuse_ip_risk.total_requests + 1,
                        requests_today = CASE
                            WHEN abuse_ip_risk.last_rate_limit_reset IS NULL
                                OR abuse_ip_risk.last_rate_limit_reset < $4 THEN 1
                            ELSE abuse_ip_risk.requests_today + 1
                        END,
                        last_rate_limit_reset = CASE
                            WHEN abuse_ip_risk.last_rate_limit_reset IS NULL
                                OR abuse_ip_risk.last_rate_limit_reset < $4 THEN $2
                            ELSE abuse_ip_risk.last_rate_limit_reset
                        END,
                        requests_last_minute = CASE
                            WHEN abuse_ip_risk.minute_window_started_at IS NULL
                                OR abuse_ip_risk.minute_window_started_at <= $5 THEN 1
                            ELSE abuse_ip_risk.requests_last_minute + 1
                        END,
                        minute_window_started_at = CASE
                            WHEN abuse_ip_risk.minute_window_started_at IS NULL
                                OR abuse_ip_risk.minute_window_started_at <= $5 THEN $2
                            ELSE abuse_ip_risk.minute_window_started_at
                        END,
                        last_request_at = $2,
                        user_agent = COALESCE($3, abuse_ip_risk.user_agent),
                        updated_at = now()
                    """,
                    ip_address,
                    now,
                    event.user_agent,
                    day_start,
                    now - minute_window,
                )
                await conn.execute(
                    """
                    INSERT INTO abuse_ip_activity_log (ip_address, endpoint, method, user_agent, occurred_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    ip_address,
                    event.endpoint,
                    event.method,
                    event.user_agent,
                    now,
                )
                await conn.execute(_TRIM_ACTIVITY, ip_address, log_cap)
                record = await self._load(conn, ip_address)
        if record is None:  # pragma: no cover
            raise RuntimeError("failed to record ip request")
        return record

    async def apply_score(
        self,
        ip_address: str,
        *,
        score: int,
        suspicious_threshold: int,
        entry: SuspiciousEntry | None,
        cap: int,
    ) -> IpRiskRecord:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO abuse_ip_risk (ip_address, bot_score, is_suspicious)
                    VALUES ($1, $2, $2 >= $3)
                    ON CONFLICT (ip_address)
                    DO UPDATE SET
                        bot_score = GREATEST(abuse_ip_risk.bot_score, $2),
                        is_suspicious = abuse_ip_risk.is_suspicious
                            OR GREATEST(abuse_ip_risk.bot_score, $2) >= $3,
                        updated_at = now()
                    """,
                    ip_address,
                    score,
                    suspicious_threshold,
                )
                if entry is not None:
                    await conn.execute(
                        """
                        INSERT INTO abuse_ip_suspicious_log (ip_address, score, reasons, endpoint, occurred_at)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        ip_address,
                        entry.score,
                        list(entry.reasons),
                        entry.endpoint,
                        entry.timestamp,
                    )
                    await conn.execute(_TRIM_SUSPICIOUS, ip_address, cap)
                record = await self._load(conn, ip_address)
        if record is None:  # pragma: no cover
            raise RuntimeError("failed to score ip")
        return record

    async def try_block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> bool:
        row = await self._pool.fetchrow(
            """
            UPDATE abuse_ip_risk
            SET is_blocked = TRUE,
                blocked_at = $2,
                blocked_until = $3,
                blocked_reason = $4,
                updated_at = now()
            WHERE ip_address = $1
              AND NOT (is_blocked AND (blocked_until IS NULL OR blocked_until > $2))
            RETURNING ip_address
            """,
            ip_address,
            blocked_at,
            blocked_until,
            reason,
        )
        return row is not None

    async def clear_expired_block(self, ip_address: str, now: datetime) -> bool:
        row = await self._pool.fetchrow(
            """
            UPDATE abuse_ip_risk
            SET is_blocked = FALSE,
                blocked_at = NULL,
                blocked_until = NULL,
                blocked_reason = NULL,
                bot_score = 0,
                updated_at = now()
            WHERE ip_address = $1
              AND is_blocked
              AND blocked_until IS NOT NULL
              AND blocked_until <= $2
            RETURNING ip_address
            """,
            ip_address,
            now,
        )
        return row is not None

    async def block(
        self,
        ip_address: str,
        *,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> None:
        await self._pool.execute(
            """
            INSERT INTO abuse_ip_risk (ip_address, first_seen_at, is_blocked, blocked_at, blocked_until, blocked_reason)
            VALUES ($1, $2, TRUE, $2, $3, $4)
            ON CONFLICT (ip_address)
            DO UPDATE SET
                is_blocked = TRUE,
                blocked_at = EXCLUDED.blocked_at,
                blocked_until = EXCLUDED.blocked_until,
                blocked_reason = EXCLUDED.blocked_reason,
                updated_at = now()
            """,
            ip_address,
            blocked_at,
            blocked_until,
            reason,
        )

    async def unblock(self, ip_address: str) -> bool:
        row = await self._pool.fetchrow(
            """
            UPDATE abuse_ip_risk
            SET is_blocked = FALSE,
                blocked_at = NULL,
                blocked_until = NULL,
                blocked_reason = NULL,
                bot_score = 0,
                updated_at = now()
            WHERE ip_address = $1
            RETURNING ip_address
            """,
            ip_address,
        )
        return row is not None

    async def reset(self, ip_address: str) -> bool:
        row = await self._pool.fetchrow(
            """
            UPDATE abuse_ip_risk
            SET bot_score = 0,
                is_suspicious = FALSE,
                is_blocked = FALSE,
                blocked_at = NULL,
                blocked_until = NULL,
                blocked_reason = NULL,
                updated_at = now()
            WHERE ip_address = $1
            RETURNING ip_address
            """,
            ip_address,
        )
        return row is not None

    async def whitelist_endpoint(self, ip_address: str, endpoint: str, *, now: datetime) -> None:
        await self._pool.execute(
            """
            INSERT INTO abuse_ip_risk (ip_address, first_seen_at, whitelisted_endpoints)
            VALUES ($1, $3, ARRAY[$2::text])
            ON CONFLICT (ip_address)
            DO UPDATE SET
                whitelisted_endpoints = CASE
                    WHEN $2::text = ANY(abuse_ip_risk.whitelisted_endpoints) THEN abuse_ip_risk.whitelisted_endpoints
                    ELSE array_append(abuse_ip_risk.whitelisted_endpoints, $2::text)
                END,
                updated_at = now()
            """,
            ip_address,
            endpoint,
            now,
        )

    async def list_blocked(self, now: datetime, *, limit: int) -> Sequence[IpRiskRecord]:
        """Blocked addresses without their logs."""

        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM abuse_ip_risk
            WHERE is_blocked AND (blocked_until IS NULL OR blocked_until > $1)
            ORDER BY blocked_at DESC NULLS LAST
            LIMIT $2
            """,
            now,
            limit,
        )
        return [_record_from_row(row) for row in rows]

    async def list_suspicious(self, *, limit: int) -> Sequence[IpRiskRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM abuse_ip_risk
            WHERE is_suspicious
            ORDER BY bot_score DESC, ip_address ASC
            LIMIT $1
            """,
            limit,
        )
        return [_record_from_row(row) for row in rows]

    async def stats(self, now: datetime) -> IpStats:
        row = await self._pool.fetchrow(
            """
            SELECT
                count(*) AS total_ips,
                count(*) FILTER (WHERE is_blocked AND (blocked_until IS NULL OR blocked_until > $1)) AS blocked_ips,
                count(*) FILTER (WHERE is_suspicious) AS suspicious_ips,
                COALESCE(sum(total_requests), 0) AS total_requests,
                COALESCE(sum(requests_today), 0) AS requests_today
            FROM abuse_ip_risk
            """,
            now,
        )
        if row is None:  # pragma: no cover
            return IpStats(0, 0, 0, 0, 0)
        return IpStats(
            total_ips=int(row["total_ips"]),
            blocked_ips=int(row["blocked_ips"]),
            suspicious_ips=int(row["suspicious_ips"]),
            total_requests=int(row["total_requests"]),
            requests_today=int(row["requests_today"]),
        )
