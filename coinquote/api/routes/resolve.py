"""Ticker resolution routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from coinquote.api.dependencies import get_service
from coinquote.core.exceptions import (
    AppException,
    InvalidTickerError,
    TickerBannedError,
    TickerNotFoundError,
    UpstreamRateLimitError,
    UpstreamTransportError,
)
from coinquote.domain.ticker import Resolution, ResolveFlags
from coinquote.schemas.resolve import ResolveBatchResponse, ResolveRequest
from coinquote.services.resolver_service import ResolverService


router = APIRouter(prefix="/resolve")


def raise_for_miss(resolution: Resolution) -> None:
    """Turn a miss into the matching typed error."""
    if resolution.ok:
        return
    ticker = resolution.ticker or resolution.query
    reason = resolution.reason or "not_found"
    if reason == "invalid_ticker":
        raise InvalidTickerError()
    if reason.startswith("banned:"):
        raise TickerBannedError(ticker, reason.split(":", 1)[1])
    if reason == "ratelimit":
        raise UpstreamRateLimitError(f"Upstream throttled while resolving {ticker}")
    if reason == "api_error":
        raise UpstreamTransportError(f"Upstream search failed for {ticker}")
    if reason == "internal_error":
        raise AppException(f"Resolution failed for {ticker}")
    raise TickerNotFoundError(ticker, reason)


@router.get(
    "/{ticker}",
    response_model=Resolution,
    summary="Resolve a ticker",
    description="Resolve a ticker, cashtag or trading pair to an upstream identifier.",
)
async def resolve_ticker(
    ticker: str = Path(..., min_length=1, max_length=64),
    chain: str | None = Query(default=None, max_length=32, description="Chain hint"),
    include_wrapped: bool = Query(default=False),
    include_staked: bool = Query(default=False),
    include_bridged: bool = Query(default=False),
    include_stablecoins: bool = Query(default=False),
    force_exact: bool = Query(default=False),
    strict: bool = Query(default=False, description="Return an error status for misses"),
    service: ResolverService = Depends(get_service),
) -> Resolution:
    flags = ResolveFlags(
        include_wrapped=include_wrapped,
        include_staked=include_staked,
        include_bridged=include_bridged,
        include_stablecoins=include_stablecoins,
        force_exact=force_exact,
    )
    resolution = await service.resolve(ticker, flags=flags, default_chain=chain)
    if strict:
        raise_for_miss(resolution)
    return resolution


@router.post(
    "",
    response_model=ResolveBatchResponse,
    summary="Resolve many tickers",
    description="Resolve a batch of tickers; results keep the request order.",
)
async def resolve_batch(
    payload: ResolveRequest,
    service: ResolverService = Depends(get_service),
) -> ResolveBatchResponse:
    results = await service.resolve_many(payload.tickers, flags=payload.flags)
    return ResolveBatchResponse(results=results, resolved=sum(1 for r in results if r.ok))
