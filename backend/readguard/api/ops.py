"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from readguard.infra import postgres
from readguard.infra.auth import AuthenticatedUser, get_optional_user
from readguard.infra.redis import ping as redis_ping
from readguard.settings import settings

router = APIRouter(prefix="", tags=["ops"])


async def require_metrics_access(user: Optional[AuthenticatedUser] = Depends(get_optional_user)) -> None:
	if settings.obs_metrics_public:
		return
	if user is None:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
	if not user.has_role("admin"):
		raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, str] = {"storage": settings.abuse_storage}
	ready = True
	if settings.abuse_storage == "postgres":
		ready = await postgres.ping()
	if ready and settings.abuse_history_backend == "redis":
		ready = await redis_ping()
		checks["history"] = "redis"
	if not ready:
		return JSONResponse({"status": "unavailable", **checks}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
	return JSONResponse({"status": "ok", **checks})


@router.get("/metrics")
async def prometheus_metrics(_: None = Depends(require_metrics_access)) -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
