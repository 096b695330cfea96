"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from portal.obs import logging as obs_logging
from portal.obs import middleware
from portal.settings import settings

_initialised = False


def init(app: FastAPI) -> None:
	global _initialised
	if _initialised:
		return
	middleware.install(app, enabled=settings.obs_enabled)
	if settings.obs_enabled:
		obs_logging.configure_logging()
	_initialised = True


__all__ = ["init"]
