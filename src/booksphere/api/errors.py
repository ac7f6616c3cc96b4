"""Reusable error primitives for API exception handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..exceptions import (
    AppError,
    InvalidTransitionError,
    NotFoundError,
    OutboxPayloadError,
    RepositoryError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApiError(Exception):
    """Structured application-level error for HTTP handlers."""

    status_code: int
    code: str
    message: str
    headers: Mapping[str, str] | None = None

    def to_response(self) -> JSONResponse:
        """Materialise the error into a ``JSONResponse`` instance."""

        return JSONResponse(
            status_code=self.status_code,
            content={"error": {"code": self.code, "message": self.message}},
            headers=dict(self.headers or {}),
        )


# most specific first: UpstreamTimeoutError before UpstreamError
_APP_ERROR_MAP: tuple[tuple[type[AppError], int, str], ...] = (
    (ValidationError, 422, "validation_error"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "invalid_transition"),
    (UpstreamTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT, "upstream_timeout"),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY, "upstream_error"),
    (OutboxPayloadError, status.HTTP_500_INTERNAL_SERVER_ERROR, "outbox_payload_error"),
    (RepositoryError, status.HTTP_503_SERVICE_UNAVAILABLE, "storage_error"),
)


def api_error_from(exc: AppError) -> ApiError:
    """Translate a domain error into its HTTP representation."""

    for error_type, status_code, code in _APP_ERROR_MAP:
        if isinstance(exc, error_type):
            return ApiError(status_code, code, str(exc))
    return ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", str(exc))


async def api_error_handler(_: Request, exc: ApiError) -> JSONResponse:
    """Convert :class:`ApiError` exceptions into JSON payloads."""

    return exc.to_response()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    error = api_error_from(exc)
    if error.status_code >= 500:
        logger.error(
            "api.request.failed",
            extra={"path": request.url.path, "code": error.code, "error_type": exc.__class__.__name__},
        )
    return error.to_response()


async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid request")
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(
            {"error": {"code": "validation_error", "message": f"{location}: {message}" if location else message}}
        ),
    )


def missing_identity_error(header: str) -> ApiError:
    """Return an :class:`ApiError` for a request without caller identity."""

    return ApiError(status.HTTP_400_BAD_REQUEST, "missing_identity", f"{header} header is required")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


__all__ = [
    "ApiError",
    "api_error_from",
    "api_error_handler",
    "install_error_handlers",
    "missing_identity_error",
]
