"""Admin request/response schemas."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class BanRequest(BaseModel):
    reason: str = Field(default="admin_banned", min_length=1, max_length=64)


class MapRequest(BaseModel):
    """Pin a ticker to an identifier."""

    id: str = Field(..., min_length=1, max_length=128, description="Upstream identifier")
    chain: Optional[str] = Field(default=None, max_length=32)
    contract_address: Optional[str] = Field(default=None, max_length=128)


class AdminActionResponse(BaseModel):
    ticker: str
    action: str
    changed: bool
