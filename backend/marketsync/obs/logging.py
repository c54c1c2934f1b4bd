"""Structured logging helpers for the sync core.

Every line is one JSON object. Controller name, feed scope and user id are
carried in context variables so log calls made deep inside a merge or a
scheduled task still say which controller they belong to.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from marketsync.settings import settings

_LOGGER_NAME = "marketsync"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"controller": ContextVar("obs_controller", default=None),
	"scope": ContextVar("obs_scope", default=None),
	"user_id": ContextVar("obs_user_id", default=None),
}

# Chat bodies and notification texts never reach the log stream.
_REDACTED_KEYS = ("content", "message", "body", "payload", "token", "secret", "password", "email")

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10
_ELLIPSIS = "…"

_RESERVED_ATTRS = frozenset(
	logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def bind_context(
	*,
	controller: Optional[str] = None,
	scope: Optional[str] = None,
	user_id: Optional[str] = None,
) -> Dict[str, Token]:
	"""Bind fields for the current task; pass the result to :func:`reset_context`."""
	values = {"controller": controller, "scope": scope, "user_id": user_id}
	return {key: _CONTEXT[key].set(value) for key, value in values.items() if value is not None}


def reset_context(tokens: Dict[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


def _is_redacted(key: str) -> bool:
	lowered = key.lower()
	return any(marker in lowered for marker in _REDACTED_KEYS)


def _clip(value: Any) -> Any:
	if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
		return value[:_MAX_STRING_LENGTH] + _ELLIPSIS
	if isinstance(value, dict):
		clipped: Dict[str, Any] = {}
		for key, nested in list(value.items())[:_MAX_COLLECTION_ITEMS]:
			clipped[str(key)] = "[redacted]" if _is_redacted(str(key)) else _clip(nested)
		if len(value) > _MAX_COLLECTION_ITEMS:
			clipped[_ELLIPSIS] = f"+{len(value) - _MAX_COLLECTION_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in list(value)[:_MAX_COLLECTION_ITEMS]]
		if len(value) > _MAX_COLLECTION_ITEMS:
			items.append(_ELLIPSIS)
		return items
	if isinstance(value, datetime):
		return value.isoformat()
	return value


class JSONLogFormatter(logging.Formatter):
	"""Render a record as one JSON object with context and ``extra`` fields."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for key, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[key] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RESERVED_ATTRS:
				continue
			payload[key] = "[redacted]" if _is_redacted(key) else _clip(value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a fraction of info records; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info
		return rate >= 1.0 or random.random() < max(0.0, rate)


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
