"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from placetalk.domain.errors import InvalidCoordinate, NotFound, PinError, StoreUnavailable
from placetalk.obs.logging import current_request_id

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying after a store outage.
RETRY_AFTER_SECONDS = 2


def _request_id(request: Request) -> str:
	return getattr(request.state, "request_id", None) or current_request_id()


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": _request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": exc.errors(), "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=jsonable_encoder(payload))

	@app.exception_handler(InvalidCoordinate)
	async def invalid_coordinate_handler(request: Request, exc: InvalidCoordinate):  # type: ignore[override]
		payload = {"detail": exc.code, "message": str(exc), "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)

	@app.exception_handler(NotFound)
	async def not_found_handler(request: Request, exc: NotFound):  # type: ignore[override]
		payload = {"detail": exc.code, "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=payload)

	@app.exception_handler(StoreUnavailable)
	async def store_unavailable_handler(request: Request, exc: StoreUnavailable):  # type: ignore[override]
		logger.warning("store unavailable: %s", exc)
		payload = {"detail": exc.code, "request_id": _request_id(request)}
		return JSONResponse(
			status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
			content=payload,
			headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
		)

	@app.exception_handler(PinError)
	async def pin_error_handler(request: Request, exc: PinError):  # type: ignore[override]
		payload = {"detail": exc.code, "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=payload)
