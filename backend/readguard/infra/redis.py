"""Shared Redis handle for the reader history store.

Modules import ``redis_client`` once; the proxy keeps that reference stable
while the connection behind it is swapped (fakeredis in tests, a new URL after
settings reload). The connection is created on first use, so deployments that
keep history in process memory never open one.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from readguard.settings import settings

logger = logging.getLogger(__name__)


class RedisProxy:
	"""Forwards attribute access to the current client, connecting lazily."""

	def __init__(self, client: Optional[redis.Redis] = None):
		self._client: Optional[redis.Redis] = client

	def _current(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(settings.redis_url, decode_responses=True)
		return self._client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self._current(), item)


redis_client: RedisProxy = RedisProxy()


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)


async def ping() -> bool:
	try:
		return bool(await redis_client.ping())
	except (RedisError, OSError):
		logger.warning("redis ping failed", exc_info=True)
		return False
