from fastapi import APIRouter, Depends

from dealfinder.api.deps import get_deal_service
from dealfinder.schemas.deal import SignalStatus
from dealfinder.services.deal_service import DealService

router = APIRouter()


@router.get("/{identity_id}", response_model=SignalStatus)
async def get_signal_status(identity_id: str, service: DealService = Depends(get_deal_service)):
    return SignalStatus(
        identity_id=identity_id,
        limit=service.quota.limit,
        remaining=service.get_remaining_free_signals(identity_id),
    )


@router.post("/{identity_id}/consume", response_model=SignalStatus)
async def consume_signal(identity_id: str, service: DealService = Depends(get_deal_service)):
    used = service.consume_free_signal(identity_id)
    return SignalStatus(
        identity_id=identity_id,
        limit=service.quota.limit,
        remaining=service.get_remaining_free_signals(identity_id),
        used=used,
    )
