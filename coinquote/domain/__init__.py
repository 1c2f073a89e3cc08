"""Domain models for strongly-typed data throughout the application.

Usage:
    from coinquote.domain import Candidate, Quote, Resolution

    quote: Quote = await service.get_price("bitcoin")
    data = quote.model_dump()
"""

from coinquote.domain.price import Quote, QuoteSource
from coinquote.domain.ticker import (
    Candidate,
    FailureReason,
    MappingSource,
    Resolution,
    ResolveFlags,
    ScoredCandidate,
)


__all__ = [
    "Candidate",
    "FailureReason",
    "MappingSource",
    "Quote",
    "QuoteSource",
    "Resolution",
    "ResolveFlags",
    "ScoredCandidate",
]
