"""Resolution request/response schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from coinquote.domain.ticker import Resolution, ResolveFlags


class ResolveRequest(BaseModel):
    """Batch resolution request."""

    tickers: List[str] = Field(..., min_length=1, max_length=250, description="Free-form tickers or pairs")
    flags: Optional[ResolveFlags] = Field(default=None, description="Explicit inclusion flags")


class ResolveBatchResponse(BaseModel):
    """Resolutions in request order, misses included."""

    results: List[Resolution]
    resolved: int = Field(..., description="Number of entries with ok=true")
