"""Price response schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from coinquote.domain.price import Quote


class PriceListResponse(BaseModel):
    """Quotes aligned with the requested ids; null where no price exists."""

    ids: List[str]
    quotes: List[Optional[Quote]]
    found: int = Field(..., description="Number of non-null quotes")
