"""Crypto ticker resolution and rate-limit resilient USD pricing."""

__version__ = "1.0.0"
