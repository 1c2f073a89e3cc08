"""Ticker resolution domain models.

Type-safe representations of search candidates, caller flags and
resolution outcomes passed between the resolver layers.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class MappingSource(str, Enum):
    """Where a persisted ticker mapping came from."""

    ADMIN = "admin"
    LEARNED = "learned"
    WARMUP = "warmup"


class FailureReason(str, Enum):
    """Why a resolution attempt failed."""

    NOT_FOUND = "not_found"
    RATELIMIT = "ratelimit"
    AMBIGUOUS = "ambiguous"
    API_ERROR = "api_error"


class Candidate(BaseModel):
    """One search hit from the upstream search endpoint."""

    id: str = Field(..., description="Upstream identifier")
    symbol: str = Field(default="", description="Ticker symbol as listed upstream")
    name: str = Field(default="", description="Display name")
    market_cap_rank: int | None = Field(None, description="Rank, 1 = largest")
    categories: list[str] = Field(default_factory=list)


class ResolveFlags(BaseModel):
    """Caller intent that relaxes the default anti-poisoning filters."""

    include_wrapped: bool = False
    include_staked: bool = False
    include_bridged: bool = False
    include_stablecoins: bool = False
    force_exact: bool = False


ResolutionSource = Literal[
    "canonical", "memory", "database", "learned", "search", "none"
]


class Resolution(BaseModel):
    """Outcome of resolving free-form input to an identifier.

    `ok=False` covers not-found, banned, backoff and invalid input; `reason`
    says which. A resolved trading pair carries the quote symbol for display.
    """

    query: str
    ok: bool
    id: str | None = None
    ticker: str | None = Field(None, description="Normalized ticker that was resolved")
    quote: str | None = Field(None, description="Quote currency of a pair, upper-case")
    source: ResolutionSource = "none"
    reason: str | None = None

    @property
    def is_pair(self) -> bool:
        return self.quote is not None

    @classmethod
    def miss(cls, query: str, reason: str, ticker: str | None = None) -> Resolution:
        return cls(query=query, ok=False, ticker=ticker, reason=reason)


class ScoredCandidate(BaseModel):
    """Candidate annotated by the scorer (operator debugging)."""

    candidate: Candidate
    score: float
    blocked: bool = False
    looks_wrapped: bool = False
    stablecoin: bool = False
    filtered: bool = False
