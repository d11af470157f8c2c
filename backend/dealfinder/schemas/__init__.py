from dealfinder.schemas.deal import DealResponse, DealListResponse, SignalStatus, SignalSearchResponse
from dealfinder.schemas.alert import AlertCreate, AlertUpdate, AlertResponse

__all__ = [
    "DealResponse", "DealListResponse", "SignalStatus", "SignalSearchResponse",
    "AlertCreate", "AlertUpdate", "AlertResponse",
]
