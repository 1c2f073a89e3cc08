"""API routes package."""

from . import admin, health, prices, resolve


__all__ = ["admin", "health", "prices", "resolve"]
