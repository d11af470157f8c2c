"""
Core value types shared by the history store, evaluator, cache and service layer.

Everything here is immutable. Upstream payloads are normalized into
PricedItinerary before any deal logic sees them.
"""
import hashlib
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from dealfinder.utils import to_decimal


@dataclass(frozen=True)
class RouteKey:
    """Ordered (origin, destination) pair. Codes are case-insensitive."""
    origin: str
    destination: str

    def __post_init__(self):
        origin = (self.origin or "").strip().upper()
        destination = (self.destination or "").strip().upper()
        if not origin or not destination:
            raise ValueError("RouteKey requires both origin and destination codes")
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "destination", destination)

    @classmethod
    def parse(cls, value: str) -> "RouteKey":
        origin, sep, destination = value.partition("-")
        if not sep:
            raise ValueError(f"Not a route key: {value!r}")
        return cls(origin, destination)

    def __str__(self) -> str:
        return f"{self.origin}-{self.destination}"


@dataclass(frozen=True)
class DateRange:
    departure: date
    inbound: Optional[date] = None


@dataclass(frozen=True)
class PriceObservation:
    route_key: RouteKey
    price: Decimal
    observed_at: datetime
    departure_date: Optional[date] = None
    currency: str = "EUR"

    def __post_init__(self):
        price = to_decimal(self.price)
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        object.__setattr__(self, "price", price)


@dataclass(frozen=True)
class PricedItinerary:
    """A single priced option, already reduced from the upstream schema."""
    destination_code: str
    price: Decimal
    departure_date: date
    currency: str = "EUR"
    destination_name: str = ""
    return_date: Optional[date] = None
    airline: str = ""
    deep_link: str = ""

    def __post_init__(self):
        price = to_decimal(self.price)
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        object.__setattr__(self, "price", price)
        object.__setattr__(self, "destination_code", self.destination_code.strip().upper())


def make_deal_id(route_key: RouteKey, price: Decimal, created_at: datetime) -> str:
    digest = hashlib.sha256(
        f"{route_key}|{price}|{created_at.isoformat()}".encode()
    ).hexdigest()
    return f"deal-{route_key}-{digest[:12]}"


@dataclass(frozen=True)
class DealRecord:
    id: str
    route_key: RouteKey
    destination_name: str
    price: Decimal
    currency: str
    discount_percent: int
    average_price: Decimal
    is_last_minute: bool
    confidence: float
    deep_link: str
    created_at: datetime
    expires_at: datetime
    departure_date: Optional[date] = None
    return_date: Optional[date] = None
    airline: str = ""
    provisional: bool = field(default=False, compare=False)

    @property
    def savings(self) -> Decimal:
        return self.average_price - self.price

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        data = asdict(self)
        data["route_key"] = str(self.route_key)
        data["price"] = str(self.price)
        data["average_price"] = str(self.average_price)
        data["created_at"] = self.created_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        data["departure_date"] = self.departure_date.isoformat() if self.departure_date else None
        data["return_date"] = self.return_date.isoformat() if self.return_date else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DealRecord":
        return cls(
            id=data["id"],
            route_key=RouteKey.parse(data["route_key"]),
            destination_name=data.get("destination_name", ""),
            price=Decimal(data["price"]),
            currency=data["currency"],
            discount_percent=int(data["discount_percent"]),
            average_price=Decimal(data["average_price"]),
            is_last_minute=bool(data["is_last_minute"]),
            confidence=float(data["confidence"]),
            deep_link=data.get("deep_link", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            departure_date=date.fromisoformat(data["departure_date"]) if data.get("departure_date") else None,
            return_date=date.fromisoformat(data["return_date"]) if data.get("return_date") else None,
            airline=data.get("airline", ""),
            provisional=bool(data.get("provisional", False)),
        )
