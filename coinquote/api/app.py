"""API application factory."""

from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from coinquote.core.config import settings
from coinquote.core.exceptions import register_exception_handlers
from coinquote.core.logging import get_logger, request_id_var
from coinquote.schemas.common import ErrorResponse

from .routes import admin, health, prices, resolve


logger = get_logger("api")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add request ID to all requests for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status and duration."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()

        response = await call_next(request)

        duration = time.monotonic() - start_time

        # Path only; query strings may carry ids lists or tokens
        path = request.url.path

        logger.info(
            f"{request.method} {path} -> {response.status_code} ({duration:.3f}s)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": int(duration * 1000),
            },
        )

        return response


def create_api_app() -> FastAPI:
    """Create and configure the API application.

    The ResolverService is attached as ``app.state.service`` by the caller
    (the main lifespan, or a test).
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Crypto ticker resolution and USD pricing API",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        responses={
            400: {"model": ErrorResponse, "description": "Bad Request"},
            403: {"model": ErrorResponse, "description": "Forbidden"},
            404: {"model": ErrorResponse, "description": "Not Found"},
            422: {"model": ErrorResponse, "description": "Banned or Validation Error"},
            429: {"model": ErrorResponse, "description": "Upstream Rate Limited"},
            503: {"model": ErrorResponse, "description": "Upstream Unavailable"},
        },
    )

    # Add middlewares (order matters - first added is outermost)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(resolve.router, tags=["Resolve"])
    app.include_router(prices.router, tags=["Prices"])
    app.include_router(admin.router, tags=["Admin"])

    return app
