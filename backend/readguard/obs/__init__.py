"""Observability bootstrap: JSON logging once per process, middleware per app."""

from __future__ import annotations

from fastapi import FastAPI

from readguard.obs import logging as obs_logging
from readguard.obs import middleware
from readguard.settings import settings

_logging_configured = False


def init(app: FastAPI) -> None:
	global _logging_configured
	if not settings.obs_enabled:
		return
	if not _logging_configured:
		obs_logging.configure_logging()
		_logging_configured = True
	if getattr(app.state, "obs_installed", False):
		return
	middleware.install(app)
	app.state.obs_installed = True


__all__ = ["init"]
