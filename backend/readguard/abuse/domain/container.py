"""Service container shared by the abuse modules."""

from __future__ import annotations

from typing import Optional

import asyncpg
from redis.asyncio import Redis

from readguard.abuse.domain.clock import Clock
from readguard.abuse.domain.config import DetectionConfig, load_detection_config
from readguard.abuse.domain.history import ActivityHistoryStore, InMemoryActivityHistory, RedisActivityHistory
from readguard.abuse.domain.ip_risk import InMemoryIpRiskRepository, IpRiskRepository
from readguard.abuse.domain.user_risk import InMemoryUserRiskRepository, UserRiskRepository
from readguard.abuse.domain.verdicts import VerdictService
from readguard.abuse.infra.ip_risk_repo import PostgresIpRiskRepository
from readguard.abuse.infra.user_risk_repo import PostgresUserRiskRepository
from readguard.infra.redis import RedisProxy, redis_client
from readguard.settings import settings

_config: DetectionConfig = DetectionConfig()
_user_repository: UserRiskRepository = InMemoryUserRiskRepository()
_ip_repository: IpRiskRepository = InMemoryIpRiskRepository()
_history: ActivityHistoryStore = InMemoryActivityHistory(
    capacity=_config.max_user_activity_history,
    retention=_config.history_retention,
)
_clock: Clock | None = None
_verdicts = VerdictService(
    user_repository=_user_repository,
    ip_repository=_ip_repository,
    history=_history,
    config=_config,
    store_timeout_seconds=settings.abuse_store_timeout_seconds,
)


def configure(
    *,
    config: Optional[DetectionConfig] = None,
    user_repository: Optional[UserRiskRepository] = None,
    ip_repository: Optional[IpRiskRepository] = None,
    history: Optional[ActivityHistoryStore] = None,
    clock: Optional[Clock] = None,
    store_timeout_seconds: Optional[float] = None,
) -> VerdictService:
    global _config, _user_repository, _ip_repository, _history, _clock, _verdicts

    if config is not None:
        _config = config
    if user_repository is not None:
        _user_repository = user_repository
    if ip_repository is not None:
        _ip_repository = ip_repository
    if history is not None:
        _history = history
    elif config is not None:
        _history = InMemoryActivityHistory(
            capacity=_config.max_user_activity_history,
            retention=_config.history_retention,
        )
    if clock is not None:
        _clock = clock
    timeout = settings.abuse_store_timeout_seconds if store_timeout_seconds is None else store_timeout_seconds
    _verdicts = VerdictService(
        user_repository=_user_repository,
        ip_repository=_ip_repository,
        history=_history,
        config=_config,
        clock=_clock,
        store_timeout_seconds=timeout,
    )
    return _verdicts


def configure_postgres(
    pool: asyncpg.Pool,
    redis_conn: Redis | RedisProxy | None = None,
    *,
    config_path: Optional[str] = None,
) -> VerdictService:
    config = load_detection_config(config_path or settings.abuse_config_path)
    history: ActivityHistoryStore
    if settings.abuse_history_backend == "redis":
        proxy = redis_conn if redis_conn is not None else redis_client
        history = RedisActivityHistory(
            proxy,
            capacity=config.max_user_activity_history,
            retention=config.history_retention,
        )
    else:
        history = InMemoryActivityHistory(
            capacity=config.max_user_activity_history,
            retention=config.history_retention,
        )
    return configure(
        config=config,
        user_repository=PostgresUserRiskRepository(pool),
        ip_repository=PostgresIpRiskRepository(pool),
        history=history,
    )


def configure_in_memory(*, config_path: Optional[str] = None) -> VerdictService:
    config = load_detection_config(config_path or settings.abuse_config_path)
    return configure(
        config=config,
        user_repository=InMemoryUserRiskRepository(),
        ip_repository=InMemoryIpRiskRepository(),
    )


def get_verdict_service() -> VerdictService:
    return _verdicts


def get_detection_config() -> DetectionConfig:
    return _config
