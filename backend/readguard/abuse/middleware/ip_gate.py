"""Request gate that scores every inbound request by client address."""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from readguard.abuse.domain import container
from readguard.abuse.domain.ip_tracker import IpCheckResult
from readguard.settings import settings

logger = logging.getLogger(__name__)

_MAPPED_V4_PREFIX = "::ffff:"


def _normalise(ip: str | None) -> str | None:
    if not ip:
        return None
    value = ip.strip()
    if value.lower().startswith(_MAPPED_V4_PREFIX):
        value = value[len(_MAPPED_V4_PREFIX):]
    return value or None


def resolve_client_ip(request: Request, *, trust_forwarded: bool = True) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""

    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = _normalise(forwarded.split(",")[0])
            if first:
                return first
        real_ip = _normalise(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip
    if request.client is not None:
        return _normalise(request.client.host)
    return None


def retry_after_seconds(remaining_ms: int) -> int:
    return max(1, math.ceil(remaining_ms / 1000))


def deny_response(result: IpCheckResult) -> JSONResponse:
    retry_after = retry_after_seconds(result.remaining_ms)
    if result.is_blocked:
        detail = {
            "code": "ip_blocked",
            "reason": result.block_reason or "IP address is temporarily blocked",
            "retry_after": retry_after,
        }
    else:
        detail = {
            "code": "rate_limited",
            "reason": "Too many requests, slow down",
            "retry_after": retry_after,
        }
    return JSONResponse(status_code=429, content={"detail": detail}, headers={"Retry-After": str(retry_after)})


class IpGateMiddleware(BaseHTTPMiddleware):
    """Deny requests from blocked or over-limit addresses with HTTP 429.

    Paths listed in ``preflight_paths`` only get the read-only pre-flight
    check, so probes and scrapes of health endpoints are never recorded.
    """

    def __init__(
        self,
        app,
        *,
        enabled: bool = True,
        preflight_paths: Optional[Iterable[str]] = None,
        trust_forwarded: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        self._enabled = enabled
        paths = settings.abuse_preflight_paths if preflight_paths is None else preflight_paths
        self._preflight_paths = frozenset(paths)
        self._trust_forwarded = settings.abuse_trust_forwarded_headers if trust_forwarded is None else trust_forwarded

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._enabled or not settings.abuse_enabled or request.method == "OPTIONS":
            return await call_next(request)
        ip = resolve_client_ip(request, trust_forwarded=self._trust_forwarded)
        if ip is None:
            return await call_next(request)
        request.state.client_ip = ip

        service = container.get_verdict_service()
        path = request.url.path
        anonymous = not request.headers.get("X-User-Id")
        if path in self._preflight_paths:
            result = await service.can_make_request(ip, endpoint=path, anonymous=anonymous)
        else:
            result = await service.check_ip_activity(
                ip,
                path,
                request.method,
                request.headers.get("user-agent"),
                anonymous=anonymous,
            )
        request.state.abuse_verdict = result
        if not result.allowed:
            logger.info(
                "request denied by ip gate",
                extra={"client_ip": ip, "path": path, "blocked": result.is_blocked, "remaining_ms": result.remaining_ms},
            )
            return deny_response(result)
        return await call_next(request)


def install(app, *, enabled: bool = True) -> None:
    app.add_middleware(IpGateMiddleware, enabled=enabled)
