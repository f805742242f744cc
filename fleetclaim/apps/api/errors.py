from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleetclaim.apps.api.response import error_response
from fleetclaim.core.errors import (
    AuthenticationError,
    FleetClaimError,
    InvalidTokenError,
    NotFoundError,
    ProviderConfigError,
    UpstreamUnavailableError,
    VendorApiError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Token failures and missing reports share one answer so callers cannot tell which check failed.
NOT_FOUND_MESSAGE = "Report not found"


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _error_json(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def classify_error(exc: FleetClaimError) -> tuple[int, str, str]:
    # Never surface internal detail; the status and a stable message are enough for public callers.
    if isinstance(exc, (InvalidTokenError, NotFoundError)):
        return 404, "NOT_FOUND", NOT_FOUND_MESSAGE
    if isinstance(exc, ProviderConfigError):
        return 503, "FEATURE_UNAVAILABLE", "This feature is not available"
    if isinstance(exc, (UpstreamUnavailableError, AuthenticationError, VendorApiError)):
        return 503, "UPSTREAM_UNAVAILABLE", "Service temporarily unavailable"
    return 500, "INTERNAL_ERROR", "Internal server error"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _error_json(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Ensure Starlette-raised exceptions (unknown routes) share the envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _error_json(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    return _error_json(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Drop pydantic context objects that are not JSON serializable.
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]


async def fleetclaim_exception_handler(request: Request, exc: FleetClaimError) -> JSONResponse:
    status_code, code, message = classify_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s error_type=%s error=%s", request.url.path, type(exc).__name__, exc)
    return _error_json(request, status_code=status_code, code=code, message=message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _error_json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
