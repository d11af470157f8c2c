from typing import List

from fastapi import APIRouter, Depends, HTTPException

from dealfinder.api.deps import get_deal_service
from dealfinder.exceptions import AlertNotFoundError
from dealfinder.schemas.alert import AlertCreate, AlertResponse, AlertUpdate
from dealfinder.schemas.deal import DealListResponse, DealResponse
from dealfinder.services.deal_service import DealService

router = APIRouter()


@router.get("/{user_id}", response_model=List[AlertResponse])
async def list_alerts(
    user_id: str,
    active_only: bool = False,
    service: DealService = Depends(get_deal_service),
):
    return service.get_user_alerts(user_id, active_only=active_only)


@router.post("/{user_id}", response_model=AlertResponse)
async def create_alert(
    user_id: str,
    alert: AlertCreate,
    service: DealService = Depends(get_deal_service),
):
    try:
        return service.create_alert(user_id, **alert.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{user_id}/{alert_id}", response_model=AlertResponse)
async def update_alert(
    user_id: str,
    alert_id: int,
    alert_update: AlertUpdate,
    service: DealService = Depends(get_deal_service),
):
    try:
        return service.update_alert(user_id, alert_id, **alert_update.model_dump(exclude_unset=True))
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{user_id}/{alert_id}")
async def delete_alert(
    user_id: str,
    alert_id: int,
    service: DealService = Depends(get_deal_service),
):
    try:
        service.delete_alert(user_id, alert_id)
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "deleted", "id": alert_id}


@router.get("/{user_id}/{alert_id}/deals", response_model=DealListResponse)
async def alert_deals(
    user_id: str,
    alert_id: int,
    service: DealService = Depends(get_deal_service),
):
    """Matches from the last alert check; empty until the alert has been checked."""
    try:
        alert = service.get_user_alert(user_id, alert_id)
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")

    cached = await service.get_alert_deals(alert.id)
    deals = cached.deals if cached else []
    return DealListResponse(
        origin=alert.origin,
        count=len(deals),
        stale=cached.stale if cached else False,
        deals=[DealResponse.from_record(d) for d in deals],
    )
