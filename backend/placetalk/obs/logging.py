"""Structured JSON logging with request/job context and location redaction."""

from __future__ import annotations

import json
import logging
import random
import zlib
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4

from placetalk.settings import settings

_LOGGER_NAME = "placetalk"

# Every field here is copied onto each record emitted while it is bound.
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("obs_request_id", default=None),
	"route": ContextVar("obs_route", default=None),
	"user_id": ContextVar("obs_user_id", default=None),
	"job": ContextVar("obs_job", default=None),
	"run_id": ContextVar("obs_run_id", default=None),
}

_SECRET_KEYS = ("token", "secret", "authorization", "password")
_COORDINATE_KEYS = frozenset({"lat", "lon", "lng", "latitude", "longitude"})
# Pin free text is user content; only its length is logged.
_FREE_TEXT_KEYS = frozenset({"title", "directions", "details"})
# ~110 m, coarser than one discovery radius
_COORDINATE_DECIMALS = 3

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind contextual fields (request_id, route, user_id, job, run_id) and return reset tokens."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		var = _CONTEXT.get(name)
		if var is None:
			raise KeyError(f"unknown log context field {name}")
		if value is not None:
			tokens[name] = var.set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


@contextmanager
def job_context(job: str) -> Iterator[str]:
	"""Tag every record logged inside a background job run with the job name and a run id."""
	run_id = uuid4().hex[:12]
	tokens = bind_context(job=job, run_id=run_id)
	try:
		yield run_id
	finally:
		reset_context(tokens)


def current_request_id(default: str = "unknown") -> str:
	return _CONTEXT["request_id"].get() or default


def _context_snapshot() -> Dict[str, str]:
	snapshot: Dict[str, str] = {}
	for name, var in _CONTEXT.items():
		value = var.get()
		if value:
			snapshot[name] = value
	return snapshot


def _clip(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING_LENGTH else f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, dict):
		items = list(value.items())
		clipped = {str(key): redact(str(key), nested) for key, nested in items[:_MAX_COLLECTION_ITEMS]}
		if len(items) > _MAX_COLLECTION_ITEMS:
			clipped["…"] = f"+{len(items) - _MAX_COLLECTION_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set)):
		values = [_clip(item) for item in list(value)[:_MAX_COLLECTION_ITEMS]]
		if len(value) > _MAX_COLLECTION_ITEMS:
			values.append("…")
		return values
	if isinstance(value, (int, float, bool)) or value is None:
		return value
	return str(value)


def redact(key: str, value: Any) -> Any:
	"""Apply the logging data policy to one structured field."""
	lowered = key.lower()
	if any(secret in lowered for secret in _SECRET_KEYS):
		return "[redacted]"
	if lowered in _COORDINATE_KEYS:
		try:
			return round(float(value), _COORDINATE_DECIMALS)
		except (TypeError, ValueError):
			return "[redacted]"
	if lowered in _FREE_TEXT_KEYS:
		return f"<{len(str(value or ''))} chars>"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: envelope, bound context, then sanitised extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_context_snapshot())
		for key, value in vars(record).items():
			if key in _RECORD_ATTRS or key.startswith("_"):
				continue
			payload[key] = redact(key, value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample INFO records; a request's INFO lines are kept or dropped together."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		if rate >= 1.0:
			return True
		request_id = _CONTEXT["request_id"].get()
		if request_id:
			return (zlib.crc32(request_id.encode()) % 10_000) < rate * 10_000
		return random.random() < rate


def configure_logging() -> logging.Logger:
	"""Install the JSON handler on the root logger."""
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
