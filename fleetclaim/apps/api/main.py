from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleetclaim.apps.api.errors import (
    fleetclaim_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fleetclaim.apps.api.rate_limit import route_class_for_request
from fleetclaim.apps.api.routes.health import router as health_router
from fleetclaim.apps.api.routes.share import router as share_router
from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import FleetClaimError
from fleetclaim.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    # Public surface only; no docs endpoints are exposed next to share links.
    app = FastAPI(title=get_settings().app_name, docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        # Paths carry share tokens, so only the route class is logged.
        logger.debug(
            "request_complete method=%s route_class=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            route_class_for_request(request),
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(FleetClaimError)
    async def _fleetclaim_exception_handler(request: Request, exc: FleetClaimError):
        return await fleetclaim_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(share_router)
    return app


app = create_app()
