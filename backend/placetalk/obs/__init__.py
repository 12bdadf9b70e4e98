"""Observability: JSON logging, request middleware, metrics and health probes."""

from __future__ import annotations

from fastapi import FastAPI

from placetalk.obs import logging as obs_logging
from placetalk.obs import middleware
from placetalk.settings import settings


def init(app: FastAPI) -> None:
	"""Configure logging and attach the request middleware once per app."""
	if not settings.obs_enabled or getattr(app.state, "obs_installed", False):
		return
	obs_logging.configure_logging()
	middleware.install(app)
	app.state.obs_installed = True


__all__ = ["init"]
