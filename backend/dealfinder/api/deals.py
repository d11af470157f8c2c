from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dealfinder.api.deps import get_deal_service
from dealfinder.schemas.deal import DealListResponse, DealResponse, SignalSearchResponse
from dealfinder.services.deal_service import DealService, QuotaExceeded
from dealfinder.services.flights import DateRange

router = APIRouter()


@router.get("/{origin}", response_model=DealListResponse)
async def list_origin_deals(
    origin: str,
    limit: Optional[int] = Query(None, ge=1, le=100),
    service: DealService = Depends(get_deal_service),
):
    """Active deals from an origin, served from cache (possibly stale)."""
    cached = await service.get_cached_deals(origin)
    deals = cached.deals[:limit] if limit else cached.deals
    return DealListResponse(
        origin=origin.strip().upper(),
        count=len(deals),
        stale=cached.stale,
        deals=[DealResponse.from_record(d) for d in deals],
    )


@router.get("/{origin}/{destination}", response_model=SignalSearchResponse)
async def route_deals(
    origin: str,
    destination: str,
    identity_id: Optional[str] = Query(None, description="Spend a free signal on a fresh upstream search"),
    departure_date: Optional[date] = Query(None),
    return_date: Optional[date] = Query(None),
    service: DealService = Depends(get_deal_service),
):
    """
    Without identity_id: active deals for the route, served from cache.
    With identity_id: a fresh search gated by the identity's free signals.
    """
    stale = False
    if not identity_id:
        cached = await service.get_cached_route_deals(origin, destination)
        deals = cached.deals
        stale = cached.stale
        remaining = 0
    else:
        date_range = DateRange(departure_date, return_date) if departure_date else None
        result = await service.search_with_quota(identity_id, origin, destination, date_range)
        if isinstance(result, QuotaExceeded):
            raise HTTPException(status_code=402, detail=str(result.error))
        deals = result.deals
        remaining = result.remaining

    return SignalSearchResponse(
        origin=origin.strip().upper(),
        destination=destination.strip().upper(),
        remaining=remaining,
        stale=stale,
        count=len(deals),
        deals=[DealResponse.from_record(d) for d in deals],
    )
