"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from readguard import obs
from readguard.abuse import api as abuse_api
from readguard.abuse.domain import container as abuse_container
from readguard.abuse.middleware import ip_gate
from readguard.api import ops
from readguard.api.errors import install_error_handlers
from readguard.api.middleware_request_id import RequestIdMiddleware
from readguard.infra import postgres
from readguard.infra.redis import redis_client
from readguard.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "abuse.yml"


def _config_path() -> str | None:
	if settings.abuse_config_path:
		return settings.abuse_config_path
	return str(DEFAULT_CONFIG_PATH) if DEFAULT_CONFIG_PATH.exists() else None


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = None
	if settings.abuse_storage == "postgres":
		pool = await postgres.init_pool()
		service = abuse_container.configure_postgres(pool, redis_client, config_path=_config_path())
	else:
		service = abuse_container.configure_in_memory(config_path=_config_path())
	logger.info(
		"abuse engine configured",
		extra={"storage": settings.abuse_storage, "history": settings.abuse_history_backend},
	)
	try:
		yield
	finally:
		await service.aclose()
		if pool is not None:
			await postgres.close_pool()


def create_app(*, use_lifespan: bool = True) -> FastAPI:
	app = FastAPI(title="readguard", lifespan=lifespan if use_lifespan else None)
	install_error_handlers(app)
	# Starlette runs the last added middleware first.
	ip_gate.install(app, enabled=settings.abuse_enabled)
	obs.init(app)
	app.add_middleware(RequestIdMiddleware)
	app.include_router(ops.router)
	app.include_router(abuse_api.router)
	return app


app = create_app()
