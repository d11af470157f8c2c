import enum
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Numeric, Enum as SQLEnum
from sqlalchemy.sql import func
from dealfinder.database import Base
from dealfinder.services.flights import DealRecord

ANYWHERE = "ANYWHERE"


class AlertDateType(enum.Enum):
    FLEXIBLE = "flexible"
    SPECIFIC = "specific"


class DealAlert(Base):
    """A user's standing request to be told about deals from an origin."""
    __tablename__ = "deal_alerts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)

    origin = Column(String(8), nullable=False, index=True)
    destination = Column(String(8), nullable=False, default=ANYWHERE)
    date_type = Column(SQLEnum(AlertDateType), nullable=False, default=AlertDateType.FLEXIBLE)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    max_price = Column(Numeric(14, 4), nullable=True)

    active = Column(Boolean, nullable=False, default=True)
    last_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    @property
    def is_anywhere(self) -> bool:
        return (self.destination or ANYWHERE).upper() == ANYWHERE

    def is_due(self, now: datetime, interval: timedelta) -> bool:
        if not self.active:
            return False
        if self.last_checked_at is None:
            return True
        return now - self.last_checked_at >= interval

    def matches(self, deal: DealRecord) -> bool:
        if deal.route_key.origin != self.origin.upper():
            return False
        if not self.is_anywhere and deal.route_key.destination != self.destination.upper():
            return False
        if self.max_price is not None and deal.price > self.max_price:
            return False
        if self.date_type == AlertDateType.SPECIFIC and self.start_date and self.end_date:
            departure = deal.departure_date
            if departure is None:
                return False
            return self.start_date <= departure <= self.end_date
        return True
