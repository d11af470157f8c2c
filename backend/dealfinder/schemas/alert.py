from pydantic import BaseModel, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from dealfinder.models.deal_alert import AlertDateType


class AlertBase(BaseModel):
    origin: str = Field(..., min_length=3, max_length=8)
    destination: Optional[str] = None
    date_type: AlertDateType = AlertDateType.FLEXIBLE
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_price: Optional[Decimal] = None


class AlertCreate(AlertBase):
    pass


class AlertUpdate(BaseModel):
    destination: Optional[str] = None
    date_type: Optional[AlertDateType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_price: Optional[Decimal] = None
    active: Optional[bool] = None


class AlertResponse(AlertBase):
    id: int
    user_id: str
    destination: str
    active: bool
    last_checked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
