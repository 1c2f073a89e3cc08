"""Core infrastructure: settings, logging, exceptions, clock."""

from .clock import Clock, SystemClock, as_utc, system_clock
from .config import Settings, get_settings, settings
from .exceptions import (
    AppException,
    AuthorizationError,
    ExternalServiceError,
    FallbackUnavailableError,
    InvalidTickerError,
    NotFoundError,
    QuoteNotFoundError,
    TickerBannedError,
    TickerNotFoundError,
    UpstreamRateLimitError,
    UpstreamTransportError,
)


__all__ = [
    "AppException",
    "AuthorizationError",
    "Clock",
    "ExternalServiceError",
    "FallbackUnavailableError",
    "InvalidTickerError",
    "NotFoundError",
    "QuoteNotFoundError",
    "Settings",
    "SystemClock",
    "TickerBannedError",
    "TickerNotFoundError",
    "UpstreamRateLimitError",
    "UpstreamTransportError",
    "as_utc",
    "get_settings",
    "settings",
    "system_clock",
]
