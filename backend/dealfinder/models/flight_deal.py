from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Float, Numeric, UniqueConstraint
from sqlalchemy.sql import func
from dealfinder.database import Base
from dealfinder.services.flights import DealRecord, RouteKey


class FlightDeal(Base):
    """
    Persisted deal. One row per (origin, destination, departure_date); a newer
    evaluation for the same trip replaces the row instead of adding another.
    """
    __tablename__ = "flight_deals"

    id = Column(Integer, primary_key=True, index=True)
    deal_id = Column(String(80), nullable=False, index=True)

    origin = Column(String(8), nullable=False, index=True)
    destination = Column(String(8), nullable=False, index=True)
    destination_name = Column(String(128), nullable=True)

    departure_date = Column(Date, nullable=True)
    return_date = Column(Date, nullable=True)

    price = Column(Numeric(14, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    discount_percent = Column(Integer, nullable=False)
    average_price = Column(Numeric(14, 4), nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    is_last_minute = Column(Boolean, nullable=False, default=False)
    is_provisional = Column(Boolean, nullable=False, default=False)

    deep_link = Column(String(1024), nullable=True)
    airline = Column(String(128), nullable=True)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('origin', 'destination', 'departure_date', name='uix_deal_route_departure'),
    )

    def apply(self, record: DealRecord) -> None:
        self.deal_id = record.id
        self.origin = record.route_key.origin
        self.destination = record.route_key.destination
        self.destination_name = record.destination_name
        self.departure_date = record.departure_date
        self.return_date = record.return_date
        self.price = record.price
        self.currency = record.currency
        self.discount_percent = record.discount_percent
        self.average_price = record.average_price
        self.confidence = record.confidence
        self.is_last_minute = record.is_last_minute
        self.is_provisional = record.provisional
        self.deep_link = record.deep_link
        self.airline = record.airline
        self.created_at = record.created_at
        self.expires_at = record.expires_at

    @classmethod
    def from_record(cls, record: DealRecord) -> "FlightDeal":
        row = cls()
        row.apply(record)
        return row

    def to_record(self) -> DealRecord:
        return DealRecord(
            id=self.deal_id,
            route_key=RouteKey(self.origin, self.destination),
            destination_name=self.destination_name or "",
            price=self.price,
            currency=self.currency,
            discount_percent=self.discount_percent,
            average_price=self.average_price,
            is_last_minute=bool(self.is_last_minute),
            confidence=float(self.confidence or 0.0),
            deep_link=self.deep_link or "",
            created_at=self.created_at,
            expires_at=self.expires_at,
            departure_date=self.departure_date,
            return_date=self.return_date,
            airline=self.airline or "",
            provisional=bool(self.is_provisional),
        )
