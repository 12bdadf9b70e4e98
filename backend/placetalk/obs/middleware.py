"""Request middleware: request ids, log context, latency metrics and access logs."""

from __future__ import annotations

import re
import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from placetalk.obs import logging as obs_logging
from placetalk.obs import metrics
from placetalk.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"
_CLIENT_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")
# Probe and scrape traffic is measured but not access-logged.
_QUIET_PREFIXES = ("/health/", "/metrics")


def _request_id(request: Request) -> str:
	supplied = request.headers.get(REQUEST_ID_HEADER, "")
	if _CLIENT_REQUEST_ID.match(supplied):
		return supplied
	return uuid4().hex


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("placetalk.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not (self._enabled and settings.obs_enabled):
			return await call_next(request)

		request_id = _request_id(request)
		request.state.request_id = request_id
		tokens = obs_logging.bind_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._logger.exception("http_request_error", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			# Routing has run by now, so the template is known.
			route = _route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			if not request.url.path.startswith(_QUIET_PREFIXES):
				self._logger.info(
					"http_request",
					extra={
						"route": route,
						"method": request.method,
						"status": status_code,
						"latency_ms": round(elapsed * 1000, 3),
					},
				)
			obs_logging.reset_context(tokens)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
