"""Observability: JSON logging, HTTP middleware, Prometheus metrics, optional tracing."""

from __future__ import annotations

from fastapi import FastAPI

from chatwire.obs import logging as obs_logging
from chatwire.obs import middleware, tracing
from chatwire.settings import settings


def init(app: FastAPI) -> None:
	"""Install observability on `app` once; a no-op when OBS_ENABLED is false."""
	if not settings.obs_enabled or getattr(app.state, "obs_installed", False):
		return
	obs_logging.configure_logging()
	middleware.install(app)
	tracing.init_tracing(app)
	app.state.obs_installed = True


__all__ = ["init"]
