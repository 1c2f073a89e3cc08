"""Price domain models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class QuoteSource(str, Enum):
    """Which feed produced a quote."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


class Quote(BaseModel):
    """USD price snapshot for one identifier.

    Cached for a short TTL and never persisted.
    """

    id: str = Field(..., description="Identifier the quote belongs to")
    price: float = Field(..., ge=0, description="Price in USD")
    change_24h: float = Field(default=0.0, description="24h change in percent")
    market_cap: float | None = Field(None, ge=0, description="Market cap in USD")
    timestamp_ms: int = Field(..., description="When the quote was observed")
    source: QuoteSource = QuoteSource.PRIMARY
    provider: str = Field(default="coingecko", description="Concrete upstream name")
    is_stale: bool = Field(default=False, description="Served past its fresh TTL")

    def as_stale(self) -> Quote:
        return self.model_copy(update={"is_stale": True})
