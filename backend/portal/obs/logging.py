"""JSON logging for the messaging service.

Every record carries the service identity plus whatever request or socket
context is bound at the time (request id, route, acting user, conversation).
Extra fields passed through ``logger.info(..., extra={...})`` are copied onto
the payload after redaction, so message text and credentials never reach the
log sink.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from portal.settings import settings

_LOGGER_NAME = "portal"

_CONTEXT_FIELDS = ("request_id", "route", "user_id", "conversation_id")
_BOUND: ContextVar[Mapping[str, str]] = ContextVar("portal_log_context", default={})

# message text, previews and attachment urls are user content
_REDACTED_KEYS = (
	"token",
	"secret",
	"authorization",
	"password",
	"content",
	"preview",
	"body",
	"attachment",
)

_MAX_TEXT = 200
_MAX_ITEMS = 8

_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Bind request/socket fields for the current task; pass the token to reset_context."""
	unknown = set(fields) - set(_CONTEXT_FIELDS)
	if unknown:
		raise TypeError(f"unknown log context fields: {sorted(unknown)}")
	merged = dict(_BOUND.get())
	merged.update({key: value for key, value in fields.items() if value is not None})
	return _BOUND.set(merged)


def reset_context(token: Token) -> None:
	_BOUND.reset(token)


def current_request_id() -> Optional[str]:
	return _BOUND.get().get("request_id")


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + "..."
	if isinstance(value, Mapping):
		items = list(value.items())
		scrubbed = {str(k): _scrub(str(k), v) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			scrubbed["_truncated"] = len(items) - _MAX_ITEMS
		return scrubbed
	if isinstance(value, (list, tuple, set, frozenset)):
		values = list(value)
		head = [_scrub(key, item) for item in values[:_MAX_ITEMS]]
		if len(values) > _MAX_ITEMS:
			head.append(f"+{len(values) - _MAX_ITEMS} more")
		return head
	if value is None or isinstance(value, (bool, int, float)):
		return value
	return str(value)


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_BOUND.get())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = min(1.0, max(0.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
