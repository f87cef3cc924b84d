"""Structured JSON logging.

Context fields (request id, route, user, socket sid, client ip) live in
contextvars so HTTP middleware and socket handlers can bind them once and
every log line emitted inside picks them up.
"""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from chatwire.settings import settings

_LOGGER_NAME = "chatwire"

# field name -> (context var, key in the JSON line)
_CONTEXT: Dict[str, tuple[ContextVar[Optional[str]], str]] = {
	"request_id": (ContextVar("chatwire_request_id", default=None), "request_id"),
	"route": (ContextVar("chatwire_route", default=None), "route"),
	"user_id": (ContextVar("chatwire_user_id", default=None), "user_id"),
	"sid": (ContextVar("chatwire_sid", default=None), "sid"),
	"client_ip": (ContextVar("chatwire_client_ip", default=None), "ip"),
}

# Message text and phone numbers never reach the logs.
_REDACTED_KEYS = ("token", "secret", "authorization", "phone", "content", "text", "caption", "payload", "body")

_MAX_STRING = 256
_MAX_ITEMS = 10

_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind context fields and return the tokens needed to undo it."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		var, _ = _CONTEXT[name]
		tokens[name] = var.set(str(value))
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name][0].reset(token)


@contextmanager
def bound(**fields: Optional[str]) -> Iterator[None]:
	tokens = bind_context(**fields)
	try:
		yield
	finally:
		reset_context(tokens)


def _clip(value: Any, key: str = "") -> Any:
	if key and any(word in key.lower() for word in _REDACTED_KEYS):
		return "[redacted]"
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "..."
	if isinstance(value, dict):
		items = list(value.items())
		clipped = {str(k): _clip(v, str(k)) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["..."] = f"+{len(items) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set)):
		values = [_clip(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			values.append("...")
		return values
	return value


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		line: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for var, key in _CONTEXT.values():
			value = var.get()
			if value:
				line[key] = value
		if record.exc_info:
			line["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS and key not in line:
				line[key] = _clip(value, key)
		return json.dumps(line, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Samples INFO records; everything else always passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
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

