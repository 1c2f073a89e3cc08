"""USD price routes backed by the rate-limit aware price service."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from coinquote.api.dependencies import get_service
from coinquote.core.exceptions import BadRequestError
from coinquote.domain.price import Quote
from coinquote.schemas.prices import PriceListResponse
from coinquote.services.resolver_service import ResolverService


router = APIRouter(prefix="/prices")

MAX_IDS_PER_REQUEST = 250


def _parse_ids(raw: str) -> list[str]:
    ids = [part.strip().lower() for part in raw.split(",") if part.strip()]
    if not ids:
        raise BadRequestError(message="At least one id is required", error_code="IDS_REQUIRED")
    if len(ids) > MAX_IDS_PER_REQUEST:
        raise BadRequestError(
            message=f"At most {MAX_IDS_PER_REQUEST} ids per request",
            error_code="TOO_MANY_IDS",
        )
    return ids


@router.get(
    "",
    response_model=PriceListResponse,
    summary="Get many prices",
    description="Quotes for comma-separated ids, aligned with the input; null where no price exists.",
)
async def get_prices(
    ids: str = Query(..., min_length=1, description="Comma-separated identifiers"),
    service: ResolverService = Depends(get_service),
) -> PriceListResponse:
    coin_ids = _parse_ids(ids)
    quotes = await service.get_prices(coin_ids)
    return PriceListResponse(
        ids=coin_ids, quotes=quotes, found=sum(1 for q in quotes if q is not None)
    )


@router.get(
    "/{coin_id}",
    response_model=Quote,
    summary="Get one price",
    description="USD quote for one identifier. Served from the fallback feed during cooldown.",
)
async def get_price(
    coin_id: str = Path(..., min_length=1, max_length=128),
    service: ResolverService = Depends(get_service),
) -> Quote:
    return await service.get_price(coin_id.strip().lower())
