"""
Deal scoring.

Decides whether an itinerary price is a deal against the route's rolling
baseline, and attaches discount, confidence and expiry. Evaluation never
raises for missing or thin history; that becomes a verdict reason.

Thresholds come from a DealPolicy. Two named policies exist:
- interactive: user-triggered searches (7-day last-minute window, 15% bar)
- batch: scheduled deal-finder runs (14-day last-minute window, 40% bar)
"""
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Optional

from dealfinder.config import Settings, get_settings
from dealfinder.exceptions import InsufficientHistoryError
from dealfinder.services.flights import DealRecord, PricedItinerary, RouteKey, make_deal_id
from dealfinder.services.price_history import RouteHistory
from dealfinder.utils import utcnow, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)
HALF = Decimal("0.5")


class SearchMode(enum.Enum):
    FULL = "full"
    LAST_MINUTE = "last_minute"


class VerdictReason(str, enum.Enum):
    PRICE_DROP = "price_drop"
    LAST_MINUTE_DEAL = "last_minute_deal"
    PROVISIONAL = "provisional"
    INSUFFICIENT_HISTORY = "insufficient_history"
    PRICE_NOT_LOW_ENOUGH = "price_not_low_enough"
    INVALID_BASELINE = "invalid_baseline"


@dataclass(frozen=True)
class DealPolicy:
    name: str
    min_history_entries: int
    min_discount_percent: Decimal
    last_minute_window_days: int
    last_minute_discount_percent: Decimal
    significant_discount_percent: Decimal
    exceptional_discount_percent: Decimal
    provisional_price_floor: Decimal
    provisional_discount_percent: int
    provisional_average_multiplier: Decimal
    default_expiry_hours: int
    significant_expiry_hours: int
    exceptional_expiry_hours: int
    last_minute_expiry_cap_hours: int

    @classmethod
    def _from_settings(cls, name: str, settings: Settings, window_days: int, last_minute_discount) -> "DealPolicy":
        return cls(
            name=name,
            min_history_entries=settings.price_history_min_entries,
            min_discount_percent=to_decimal(settings.min_discount_percent),
            last_minute_window_days=window_days,
            last_minute_discount_percent=to_decimal(last_minute_discount),
            significant_discount_percent=to_decimal(settings.significant_discount_percent),
            exceptional_discount_percent=to_decimal(settings.exceptional_discount_percent),
            provisional_price_floor=to_decimal(settings.provisional_price_floor),
            provisional_discount_percent=settings.provisional_discount_percent,
            provisional_average_multiplier=to_decimal(settings.provisional_average_multiplier),
            default_expiry_hours=settings.deal_expiry_hours,
            significant_expiry_hours=settings.significant_deal_expiry_hours,
            exceptional_expiry_hours=settings.exceptional_deal_expiry_hours,
            last_minute_expiry_cap_hours=settings.last_minute_expiry_cap_hours,
        )

    @classmethod
    def interactive(cls, settings: Optional[Settings] = None) -> "DealPolicy":
        settings = settings or get_settings()
        return cls._from_settings(
            "interactive",
            settings,
            settings.interactive_last_minute_window_days,
            settings.interactive_last_minute_discount_percent,
        )

    @classmethod
    def batch(cls, settings: Optional[Settings] = None) -> "DealPolicy":
        settings = settings or get_settings()
        return cls._from_settings(
            "batch",
            settings,
            settings.batch_last_minute_window_days,
            settings.batch_last_minute_discount_percent,
        )


@dataclass(frozen=True)
class DealVerdict:
    is_deal: bool
    reason: VerdictReason
    discount_percent: int = 0
    is_last_minute: bool = False
    deal: Optional[DealRecord] = None


def round_percent(value: Decimal) -> int:
    """Nearest integer, halves toward +infinity (-2.5 -> -2, 24.5 -> 25)."""
    return int((value + HALF).to_integral_value(rounding=ROUND_FLOOR))


class DealEvaluator:
    def __init__(self, policy: Optional[DealPolicy] = None, clock: Callable[[], datetime] = utcnow):
        self.policy = policy or DealPolicy.interactive()
        self.clock = clock

    def evaluate(
        self,
        route_key: RouteKey,
        itinerary: PricedItinerary,
        history: Optional[RouteHistory],
        *,
        search_mode: SearchMode = SearchMode.FULL,
        now: Optional[datetime] = None,
    ) -> DealVerdict:
        now = now or self.clock()
        price = itinerary.price
        is_last_minute = self.is_last_minute(itinerary.departure_date, now.date())

        try:
            self._require_history(route_key, history)
        except InsufficientHistoryError as e:
            if search_mode is SearchMode.LAST_MINUTE and price < self.policy.provisional_price_floor:
                return self._provisional(route_key, itinerary, now, is_last_minute)
            logger.debug(str(e))
            return DealVerdict(is_deal=False, reason=VerdictReason.INSUFFICIENT_HISTORY, is_last_minute=is_last_minute)

        average = to_decimal(history.average)
        if average <= 0:
            logger.warning(f"Non-positive baseline {average} for {route_key}")
            return DealVerdict(is_deal=False, reason=VerdictReason.INVALID_BASELINE, is_last_minute=is_last_minute)

        raw_discount = (average - price) / average * HUNDRED
        discount_percent = round_percent(raw_discount)

        if raw_discount >= self.policy.min_discount_percent:
            reason = VerdictReason.PRICE_DROP
        elif is_last_minute and raw_discount >= self.policy.last_minute_discount_percent:
            reason = VerdictReason.LAST_MINUTE_DEAL
        else:
            return DealVerdict(
                is_deal=False,
                reason=VerdictReason.PRICE_NOT_LOW_ENOUGH,
                discount_percent=discount_percent,
                is_last_minute=is_last_minute,
            )

        record = DealRecord(
            id=make_deal_id(route_key, price, now),
            route_key=route_key,
            destination_name=itinerary.destination_name,
            price=price,
            currency=itinerary.currency,
            discount_percent=discount_percent,
            average_price=average,
            is_last_minute=is_last_minute,
            confidence=self.compute_confidence(history.count, discount_percent),
            deep_link=itinerary.deep_link,
            created_at=now,
            expires_at=self.calculate_expiry(now, discount_percent, is_last_minute),
            departure_date=itinerary.departure_date,
            return_date=itinerary.return_date,
            airline=itinerary.airline,
        )
        return DealVerdict(
            is_deal=True,
            reason=reason,
            discount_percent=discount_percent,
            is_last_minute=is_last_minute,
            deal=record,
        )

    def is_last_minute(self, departure_date: date, today: date) -> bool:
        return (departure_date - today).days <= self.policy.last_minute_window_days

    def compute_confidence(self, count: int, discount_percent) -> float:
        """
        More samples and deeper discounts raise confidence, capped at 0.99.
        """
        value = 0.5 + (count / 20) * 0.25 + (float(discount_percent) / 100) * 0.25
        return min(value, 0.99)

    def calculate_expiry(self, now: datetime, discount, is_last_minute: bool) -> datetime:
        discount = to_decimal(discount)
        hours = self.policy.default_expiry_hours
        if discount >= self.policy.exceptional_discount_percent:
            hours = self.policy.exceptional_expiry_hours
        elif discount >= self.policy.significant_discount_percent:
            hours = self.policy.significant_expiry_hours
        if is_last_minute:
            hours = min(hours, self.policy.last_minute_expiry_cap_hours)
        return now + timedelta(hours=hours)

    def _require_history(self, route_key: RouteKey, history: Optional[RouteHistory]) -> None:
        count = history.count if history else 0
        if count < self.policy.min_history_entries:
            raise InsufficientHistoryError(str(route_key), count, self.policy.min_history_entries)

    def _provisional(
        self,
        route_key: RouteKey,
        itinerary: PricedItinerary,
        now: datetime,
        is_last_minute: bool,
    ) -> DealVerdict:
        # No baseline yet: assume the price sits a fixed fraction under an implied average
        discount = self.policy.provisional_discount_percent
        record = DealRecord(
            id=make_deal_id(route_key, itinerary.price, now),
            route_key=route_key,
            destination_name=itinerary.destination_name,
            price=itinerary.price,
            currency=itinerary.currency,
            discount_percent=discount,
            average_price=itinerary.price * self.policy.provisional_average_multiplier,
            is_last_minute=is_last_minute,
            confidence=self.compute_confidence(0, discount),
            deep_link=itinerary.deep_link,
            created_at=now,
            expires_at=self.calculate_expiry(now, discount, is_last_minute),
            departure_date=itinerary.departure_date,
            return_date=itinerary.return_date,
            airline=itinerary.airline,
            provisional=True,
        )
        logger.info(f"Provisional last-minute deal for {route_key} at {itinerary.price} (no history)")
        return DealVerdict(
            is_deal=True,
            reason=VerdictReason.PROVISIONAL,
            discount_percent=discount,
            is_last_minute=is_last_minute,
            deal=record,
        )
