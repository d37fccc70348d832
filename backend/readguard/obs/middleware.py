"""Request metrics and access logging, including the IP gate's verdict."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from readguard.obs import logging as obs_logging
from readguard.obs import metrics
from readguard.settings import settings


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	if route and getattr(route, "path", None):
		return route.path  # type: ignore[return-value]
	return request.url.path


def _verdict_fields(request: Request) -> Dict[str, Any]:
	verdict = getattr(request.state, "abuse_verdict", None)
	if verdict is None:
		return {}
	fields: Dict[str, Any] = {"abuse_allowed": verdict.allowed, "abuse_score": verdict.bot_score}
	if verdict.is_blocked:
		fields["abuse_blocked"] = True
	return fields


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("readguard.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled or not self._enabled:
			return await call_next(request)

		request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or str(uuid4())
		request.state.request_id = request_id
		token = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			user_id=request.headers.get("X-User-Id"),
			client_ip=request.client.host if request.client else None,
		)
		start = time.perf_counter()
		status_code = 500
		response: Optional[Response] = None
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._logger.exception(
				"http_request_error",
				extra={"method": request.method, "path": request.url.path},
			)
			raise
		finally:
			elapsed_seconds = time.perf_counter() - start
			route_template = _route_template(request)
			metrics.observe_request(route_template, request.method, status_code, elapsed_seconds)
			obs_logging.reset_context(token)

		response.headers.setdefault("X-Request-Id", request_id)
		self._logger.info(
			"http_request",
			extra={
				"status": status_code,
				"method": request.method,
				"latency_ms": round(elapsed_seconds * 1000, 3),
				"route": route_template,
				"client_ip": getattr(request.state, "client_ip", None),
				**_verdict_fields(request),
			},
		)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
