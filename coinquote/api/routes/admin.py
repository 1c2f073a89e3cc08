"""Operator routes for the learning store. All require X-Admin-Token."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Path

from coinquote.api.dependencies import get_service, require_admin
from coinquote.core.exceptions import InvalidTickerError
from coinquote.core.logging import get_logger
from coinquote.domain.ticker import Resolution
from coinquote.schemas.admin import AdminActionResponse, BanRequest, MapRequest
from coinquote.services.resolver_service import ResolverService


router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

logger = get_logger("api.routes.admin")


@router.post("/ban/{ticker}", response_model=AdminActionResponse, summary="Ban a ticker")
async def ban_ticker(
    ticker: str = Path(..., min_length=1, max_length=64),
    payload: BanRequest | None = Body(default=None),
    service: ResolverService = Depends(get_service),
) -> AdminActionResponse:
    if not await service.ban(ticker, payload.reason if payload else "admin_banned"):
        raise InvalidTickerError()
    return AdminActionResponse(ticker=ticker, action="ban", changed=True)


@router.post("/unban/{ticker}", response_model=AdminActionResponse, summary="Lift a ban")
async def unban_ticker(
    ticker: str = Path(..., min_length=1, max_length=64),
    service: ResolverService = Depends(get_service),
) -> AdminActionResponse:
    changed = await service.unban(ticker)
    return AdminActionResponse(ticker=ticker, action="unban", changed=changed)


@router.post(
    "/relearn/{ticker}",
    response_model=Resolution,
    summary="Forget and re-learn a ticker",
)
async def relearn_ticker(
    ticker: str = Path(..., min_length=1, max_length=64),
    service: ResolverService = Depends(get_service),
) -> Resolution:
    return await service.relearn(ticker)


@router.post("/map/{ticker}", response_model=AdminActionResponse, summary="Pin a mapping")
async def map_ticker(
    payload: MapRequest,
    ticker: str = Path(..., min_length=1, max_length=64),
    service: ResolverService = Depends(get_service),
) -> AdminActionResponse:
    if not await service.force_map(
        ticker, payload.id.strip().lower(), payload.chain, payload.contract_address
    ):
        raise InvalidTickerError()
    return AdminActionResponse(ticker=ticker, action="map", changed=True)


@router.get("/stats", summary="Resolver and price statistics")
async def get_stats(service: ResolverService = Depends(get_service)) -> dict[str, Any]:
    return await service.stats()


@router.get("/explain/{query}", summary="Explain how a query would resolve")
async def explain_query(
    query: str = Path(..., min_length=1, max_length=128),
    service: ResolverService = Depends(get_service),
) -> dict[str, Any]:
    return await service.explain(query)
