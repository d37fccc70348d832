"""Fail-open wrapper for abuse store round-trips."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from readguard.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreGuard:
    """Bounds each store call by a timeout and swallows its failures.

    A failed or slow call is logged, counted and replaced by ``default`` so an
    outage of the store degrades verdicts instead of failing requests.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout

    async def call(self, op: str, factory: Callable[[], Awaitable[T]], *, default: T) -> T:
        started = time.perf_counter()
        try:
            if self._timeout is None:
                return await factory()
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except asyncio.TimeoutError:
            obs_metrics.inc_store_failure(op)
            logger.warning("abuse store call timed out", extra={"op": op, "timeout": self._timeout})
            return default
        except Exception:
            obs_metrics.inc_store_failure(op)
            logger.warning("abuse store call failed", extra={"op": op}, exc_info=True)
            return default
        finally:
            obs_metrics.observe_store(op, time.perf_counter() - started)
