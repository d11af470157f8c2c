from pydantic import BaseModel
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from dealfinder.services.flights import DealRecord


class DealResponse(BaseModel):
    id: str
    origin: str
    destination: str
    destination_name: str = ""
    price: Decimal
    currency: str
    discount_percent: int
    average_price: Decimal
    savings: Decimal
    is_last_minute: bool
    is_provisional: bool = False
    confidence: float
    deep_link: str = ""
    airline: str = ""
    departure_date: Optional[date] = None
    return_date: Optional[date] = None
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, record: DealRecord) -> "DealResponse":
        return cls(
            id=record.id,
            origin=record.route_key.origin,
            destination=record.route_key.destination,
            destination_name=record.destination_name,
            price=record.price,
            currency=record.currency,
            discount_percent=record.discount_percent,
            average_price=record.average_price,
            savings=record.savings,
            is_last_minute=record.is_last_minute,
            is_provisional=record.provisional,
            confidence=record.confidence,
            deep_link=record.deep_link,
            airline=record.airline,
            departure_date=record.departure_date,
            return_date=record.return_date,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )


class DealListResponse(BaseModel):
    origin: str
    count: int
    stale: bool = False
    deals: List[DealResponse]


class SignalStatus(BaseModel):
    identity_id: str
    limit: int
    remaining: int
    used: Optional[int] = None


class SignalSearchResponse(BaseModel):
    origin: str
    destination: str
    remaining: int
    stale: bool = False
    count: int
    deals: List[DealResponse]
