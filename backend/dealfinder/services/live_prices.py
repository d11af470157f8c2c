"""
Live-prices upstream adapter.

A live-prices search is two-step: create a session, then poll it until the
upstream reports the result complete. Every HTTP call goes through the
RequestScheduler so the rate limit covers polling too.

The upstream payload (itineraries/legs/places/carriers) is reduced to
PricedItinerary values here; nothing past this module sees the raw shape.
"""
import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from datetime import date
from decimal import InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dealfinder.config import Settings, get_settings
from dealfinder.exceptions import UpstreamError
from dealfinder.services.flights import DateRange, PricedItinerary
from dealfinder.services.request_scheduler import RequestScheduler

logger = logging.getLogger(__name__)

RESULT_STATUS_COMPLETE = "RESULT_STATUS_COMPLETE"
CABIN_CLASS = "CABIN_CLASS_ECONOMY"


class SearchState(enum.Enum):
    CREATED = "created"
    POLLING = "polling"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class PriceSearchProvider(ABC):
    """Capability consumed by DealService: priced itineraries for a route or an origin."""

    @abstractmethod
    async def search_prices(self, origin: str, destination: str, date_range: DateRange) -> List[PricedItinerary]:
        pass

    @abstractmethod
    async def search_from_origin(self, origin: str, date_range: DateRange) -> List[PricedItinerary]:
        pass


def _date_parts(value: date) -> Dict[str, int]:
    return {"year": value.year, "month": value.month, "day": value.day}


def _parse_date_parts(parts: Optional[dict]) -> Optional[date]:
    if not parts:
        return None
    return date(int(parts["year"]), int(parts["month"]), int(parts["day"]))


def _airline_name(carriers: Dict[str, dict], leg: dict) -> str:
    marketing = (leg.get("carriers") or {}).get("marketing") or []
    if not marketing:
        return "Unknown"
    carrier = carriers.get(str(marketing[0].get("id")))
    return carrier.get("name", "Unknown") if carrier else "Unknown"


def _index(items: Any, key: str) -> Dict[str, dict]:
    """Upstream sends either a list of objects or a dict keyed by id."""
    if isinstance(items, dict):
        return {str(k): v for k, v in items.items()}
    return {str(item.get(key)): item for item in items or [] if isinstance(item, dict)}


def normalize_live_prices(content: Optional[dict], origin: str) -> List[PricedItinerary]:
    """
    Reduce a live-prices result payload to one PricedItinerary per itinerary,
    using its cheapest pricing option. Itineraries missing a price, an
    outbound leg or a known destination are skipped.
    """
    if not content:
        return []

    itineraries = (content.get("itineraries") or {}).get("results") or []
    legs = _index(content.get("legs"), "id")
    places = _index(content.get("places"), "entityId")
    carriers = _index(content.get("carriers"), "id")
    origin = origin.strip().upper()

    results = []
    skipped = 0
    for itinerary in itineraries:
        try:
            options = itinerary.get("pricingOptions") or []
            if not options:
                skipped += 1
                continue
            cheapest = min(options, key=lambda o: float(o["price"]["amount"]))

            leg_ids = itinerary.get("legIds") or []
            outbound = legs.get(str(leg_ids[0])) if leg_ids else None
            if outbound is None:
                skipped += 1
                continue
            inbound = legs.get(str(leg_ids[1])) if len(leg_ids) > 1 else None

            place = places.get(str(outbound.get("destinationPlaceId")))
            if not place or not place.get("iata"):
                skipped += 1
                continue
            if place["iata"].upper() == origin:
                skipped += 1
                continue

            departure = _parse_date_parts(outbound.get("departureDateTime"))
            if departure is None:
                skipped += 1
                continue

            items = cheapest.get("items") or []
            results.append(PricedItinerary(
                destination_code=place["iata"],
                destination_name=place.get("name", ""),
                price=cheapest["price"]["amount"],
                currency=cheapest["price"].get("unit") or get_settings().default_currency,
                departure_date=departure,
                return_date=_parse_date_parts(inbound.get("departureDateTime")) if inbound else None,
                airline=_airline_name(carriers, outbound),
                deep_link=(items[0].get("deepLink") or "") if items else "",
            ))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            skipped += 1
            logger.debug(f"Skipping malformed itinerary from {origin}: {e}")

    if skipped:
        logger.info(f"Normalized {len(results)} itineraries from {origin}, skipped {skipped}")
    return results


class LivePricesSearch:
    """
    One create-then-poll search, driven as an explicit state machine:

        CREATED -> POLLING -> COMPLETE
                           -> TIMED_OUT (max_attempts polls without completion)
        CREATED -> FAILED (session could not be created)
    """

    def __init__(
        self,
        scheduler: RequestScheduler,
        base_url: str,
        query: dict,
        max_attempts: int = 5,
        poll_interval: float = 1.0,
        headers: Optional[dict] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.scheduler = scheduler
        self.base_url = base_url.rstrip("/")
        self.query = query
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.headers = headers or {}
        self.sleep = sleep

        self.state = SearchState.CREATED
        self.session_token: Optional[str] = None
        self.attempts = 0
        self.result: Optional[dict] = None

    async def run(self) -> Optional[dict]:
        """Returns the completed result payload, or None if polling timed out."""
        try:
            created = await self.scheduler.enqueue({
                "method": "POST",
                "url": f"{self.base_url}/flights/live/search/create",
                "json": self.query,
                "headers": self.headers,
            })
        except UpstreamError:
            self.state = SearchState.FAILED
            raise

        self.session_token = (created or {}).get("sessionToken")
        if not self.session_token:
            self.state = SearchState.FAILED
            raise UpstreamError("Live prices session created without a session token")

        if created.get("status") == RESULT_STATUS_COMPLETE:
            return self._complete(created)

        self.state = SearchState.POLLING
        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                data = await self.scheduler.enqueue({
                    "method": "POST",
                    "url": f"{self.base_url}/flights/live/search/poll/{self.session_token}",
                    "headers": self.headers,
                })
            except UpstreamError as e:
                logger.warning(f"Live prices poll attempt {self.attempts} failed: {e}")
                if self.attempts < self.max_attempts:
                    await self.sleep(self.poll_interval * 2 * self.attempts)
                continue

            if (data or {}).get("status") == RESULT_STATUS_COMPLETE:
                return self._complete(data)
            if self.attempts < self.max_attempts:
                await self.sleep(self.poll_interval)

        self.state = SearchState.TIMED_OUT
        logger.warning(f"Live prices polling not completed after {self.max_attempts} attempts")
        return None

    def _complete(self, data: dict) -> dict:
        self.state = SearchState.COMPLETE
        self.result = data
        return data


class LivePricesClient(PriceSearchProvider):
    """
    PriceSearchProvider backed by the live-prices API.

    Usage:
        scheduler = RequestScheduler(HttpxTransport(api_key="..."))
        client = LivePricesClient(scheduler)
        itineraries = await client.search_prices("VNO", "BCN", DateRange(date(2026, 5, 1)))
    """

    def __init__(self, scheduler: RequestScheduler, settings: Optional[Settings] = None):
        self.scheduler = scheduler
        self.settings = settings or get_settings()

    def build_query(self, origin: str, destination: Optional[str], date_range: DateRange) -> dict:
        origin = origin.strip().upper()
        outbound_target = {"iata": destination.strip().upper()} if destination else {"anywhere": True}
        legs = [{
            "originPlaceId": {"iata": origin},
            "destinationPlaceId": outbound_target,
            "date": _date_parts(date_range.departure),
        }]
        if date_range.inbound and destination:
            legs.append({
                "originPlaceId": {"iata": destination.strip().upper()},
                "destinationPlaceId": {"iata": origin},
                "date": _date_parts(date_range.inbound),
            })
        return {
            "query": {
                "market": self.settings.live_prices_market,
                "locale": self.settings.live_prices_locale,
                "currency": self.settings.default_currency,
                "queryLegs": legs,
                "cabinClass": CABIN_CLASS,
                "adults": 1,
                "childrenAges": [],
            }
        }

    def new_search(self, query: dict) -> LivePricesSearch:
        return LivePricesSearch(
            self.scheduler,
            self.settings.live_prices_base_url,
            query,
            max_attempts=self.settings.max_poll_attempts,
            poll_interval=self.settings.poll_interval_seconds,
            headers={"Content-Type": "application/json"},
        )

    async def search_prices(self, origin: str, destination: str, date_range: DateRange) -> List[PricedItinerary]:
        search = self.new_search(self.build_query(origin, destination, date_range))
        result = await search.run()
        if result is None:
            return []
        itineraries = normalize_live_prices(result.get("content"), origin)
        wanted = destination.strip().upper()
        return [i for i in itineraries if i.destination_code == wanted]

    async def search_from_origin(self, origin: str, date_range: DateRange) -> List[PricedItinerary]:
        search = self.new_search(self.build_query(origin, None, date_range))
        result = await search.run()
        if result is None:
            return []
        return normalize_live_prices(result.get("content"), origin)
