"""Custom exceptions and centralized exception handlers.

The resolution/price taxonomy:

- NotFound: nothing survived filtering, or the upstream has no price.
- Banned: the ticker is intentionally excluded; carries the ban reason.
- RateLimited: upstream throttling (HTTP 429 or a throttling marker).
- Transport: network error, timeout, or a non-2xx upstream response.

Ambiguity is resolved by tie-break rules and never raised.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class BadRequestError(AppException):
    """Bad request."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "BAD_REQUEST"
    message = "Bad request"


class AuthorizationError(AppException):
    """Authorization failed."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"
    message = "You don't have permission to access this resource"


class ExternalServiceError(AppException):
    """External service error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service temporarily unavailable"


class InvalidTickerError(BadRequestError):
    """Input does not normalize to a usable ticker."""

    error_code = "INVALID_TICKER"
    message = "Ticker is empty or too long"


class TickerNotFoundError(NotFoundError):
    """No candidate survived filtering for the ticker."""

    error_code = "TICKER_NOT_FOUND"
    message = "Unknown ticker"

    def __init__(self, ticker: str, reason: str | None = None):
        self.ticker = ticker
        self.reason = reason or "not_found"
        super().__init__(
            message=f"Unknown ticker: {ticker}",
            details={"ticker": ticker, "reason": self.reason},
        )


class TickerBannedError(AppException):
    """Ticker is intentionally excluded from resolution."""

    status_code = 422
    error_code = "TICKER_BANNED"
    message = "Ticker is banned"

    def __init__(self, ticker: str, reason: str | None = None):
        self.ticker = ticker
        self.reason = reason or "banned"
        super().__init__(
            message=f"Ticker {ticker} is banned ({self.reason})",
            details={"ticker": ticker, "reason": self.reason},
        )


class QuoteNotFoundError(NotFoundError):
    """Upstream returned no price for an identifier."""

    error_code = "QUOTE_NOT_FOUND"
    message = "Price not found"

    def __init__(self, coin_id: str):
        self.coin_id = coin_id
        super().__init__(
            message=f"Price not found for {coin_id}", details={"id": coin_id}
        )


class UpstreamTransportError(ExternalServiceError):
    """Network failure, timeout, or non-2xx response from an upstream."""

    error_code = "UPSTREAM_ERROR"
    message = "Upstream request failed"

    def __init__(self, message: str | None = None, upstream_status: int | None = None):
        self.upstream_status = upstream_status
        details = {"upstream_status": upstream_status} if upstream_status else None
        super().__init__(message=message, details=details)


class UpstreamRateLimitError(UpstreamTransportError):
    """Upstream is throttling us."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "UPSTREAM_RATE_LIMITED"
    message = "Upstream rate limit reached"


class FallbackUnavailableError(ExternalServiceError):
    """Secondary feed cannot serve the identifier."""

    error_code = "FALLBACK_UNAVAILABLE"
    message = "No fallback price available"

    def __init__(self, coin_id: str, reason: str):
        self.coin_id = coin_id
        self.reason = reason
        super().__init__(
            message=f"No fallback price for {coin_id}: {reason}",
            details={"id": coin_id, "reason": reason},
        )


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger = logging.getLogger("coinquote.error")
        logger.exception(
            "Unhandled exception",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )

        from .config import settings

        message = str(exc) if settings.debug else "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )
