"""
Deal service: the operations the API and the scheduler call.

User-triggered searches are judged with the interactive policy and update
history with the full (windowed) strategy. Scheduled runs use the batch
policy and the light (exponentially weighted) update. Each observation is
evaluated against the baseline as it stood before the observation, then
recorded.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session, sessionmaker

from dealfinder.config import Settings, get_settings
from dealfinder.exceptions import AlertNotFoundError, QuotaExceededError, UpstreamError
from dealfinder.models.deal_alert import ANYWHERE, AlertDateType, DealAlert
from dealfinder.models.flight_deal import FlightDeal
from dealfinder.services.deal_cache import DealCache, alert_cache_key, origin_cache_key, route_cache_key
from dealfinder.services.deal_evaluator import DealEvaluator, DealPolicy, SearchMode
from dealfinder.services.flights import DateRange, DealRecord, PricedItinerary, PriceObservation, RouteKey
from dealfinder.services.live_prices import PriceSearchProvider
from dealfinder.services.price_history import HistoryStore, RouteHistory, UpdateStrategy
from dealfinder.services.quota import QuotaTracker
from dealfinder.services.request_scheduler import group_by_origin
from dealfinder.utils import chunked, utcnow

logger = logging.getLogger(__name__)

ALERT_UPDATE_FIELDS = ("destination", "date_type", "start_date", "end_date", "max_price", "active")


@dataclass(frozen=True)
class QuotaExceeded:
    """Returned instead of deals when an identity has no free signals left."""
    identity_id: str
    limit: int
    remaining: int = 0

    @property
    def error(self) -> QuotaExceededError:
        return QuotaExceededError(self.identity_id, self.limit)


@dataclass(frozen=True)
class SignalSearchResult:
    deals: List[DealRecord]
    used: int
    remaining: int


@dataclass(frozen=True)
class CachedDeals:
    deals: List[DealRecord]
    stale: bool
    refreshing: bool = False


@dataclass
class DealRunSummary:
    mode: SearchMode
    origins: List[str] = field(default_factory=list)
    routes_processed: int = 0
    routes_failed: int = 0
    origins_failed: List[str] = field(default_factory=list)
    deals_found: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class OriginRotation:
    """
    Spreads full runs across days: origins are split into groups of
    per_day and each run takes the next group. Last-minute runs always take
    the first group (highest priority origins come first in config).
    """

    def __init__(self, origins: Iterable[str], per_day: int):
        self.origins = [o.strip().upper() for o in origins]
        self.per_day = max(1, per_day)
        self.groups = [self.origins[i:i + self.per_day] for i in range(0, len(self.origins), self.per_day)]
        self.index = 0
        logger.info(f"Created {len(self.groups)} origin rotation groups")

    def next_group(self) -> List[str]:
        if not self.groups:
            return []
        group = self.groups[self.index % len(self.groups)]
        self.index += 1
        return list(group)

    def priority_origins(self) -> List[str]:
        return self.origins[:self.per_day]


class DealService:
    def __init__(
        self,
        db: Session,
        provider: PriceSearchProvider,
        history: HistoryStore,
        cache: DealCache,
        quota: Optional[QuotaTracker] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        rotation: Optional[OriginRotation] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.db = db
        self.provider = provider
        self.history = history
        self.cache = cache
        self.settings = settings or get_settings()
        self.clock = clock
        self.quota = quota or QuotaTracker(
            db,
            limit=self.settings.free_signal_limit,
            reset_policy=self.settings.free_signal_reset_policy,
            clock=clock,
        )
        self.rotation = rotation or OriginRotation(
            self.settings.tracked_routes.keys(), self.settings.max_origins_per_day
        )
        self.session_factory = session_factory
        self.interactive_evaluator = DealEvaluator(DealPolicy.interactive(self.settings), clock=clock)
        self.batch_evaluator = DealEvaluator(DealPolicy.batch(self.settings), clock=clock)

    # Searching

    def date_range_for(self, offset_days: int) -> DateRange:
        departure = self.clock().date() + timedelta(days=offset_days)
        return DateRange(departure=departure, inbound=departure + timedelta(days=self.settings.trip_length_days))

    async def find_deals_for_route(
        self,
        origin: str,
        destination: str,
        date_range: Optional[DateRange] = None,
        search_mode: SearchMode = SearchMode.FULL,
    ) -> List[DealRecord]:
        """Search one route now. Any failure is logged and reported as no deals."""
        route_key = RouteKey(origin, destination)
        date_range = date_range or self.date_range_for(self.settings.interactive_departure_offset_days)
        try:
            itineraries = await self.provider.search_prices(route_key.origin, route_key.destination, date_range)
            deals = await self._process_itineraries(
                route_key.origin, itineraries, self.interactive_evaluator, UpdateStrategy.FULL, search_mode
            )
            if deals:
                self.save_deals(deals)
        except UpstreamError as e:
            logger.error(f"Search failed for {route_key}: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error searching {route_key}: {e}")
            return []
        logger.info(f"Found {len(deals)} deals for {route_key} from {len(itineraries)} itineraries")
        return deals

    async def find_deals_from_origin(self, origin: str, limit: Optional[int] = 10) -> List[DealRecord]:
        """Search everywhere from an origin; deals sorted by discount, deepest first."""
        origin = origin.strip().upper()
        date_range = self.date_range_for(self.settings.interactive_departure_offset_days)
        try:
            deals = await self._search_origin(origin, date_range, self.interactive_evaluator, UpdateStrategy.FULL)
            if deals:
                self.save_deals(deals)
        except UpstreamError as e:
            logger.error(f"Origin search failed for {origin}: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error searching from {origin}: {e}")
            return []
        deals.sort(key=lambda d: d.discount_percent, reverse=True)
        return deals[:limit] if limit else deals

    async def record_observed_price(
        self,
        origin: str,
        destination: str,
        price,
        observed_at: Optional[Union[date, datetime]] = None,
    ) -> RouteHistory:
        if observed_at is not None and not isinstance(observed_at, datetime):
            observed_at = datetime.combine(observed_at, time())
        observation = PriceObservation(
            route_key=RouteKey(origin, destination),
            price=price,
            observed_at=observed_at or self.clock(),
        )
        return await self.history.record_price(
            observation.route_key, observation.price, observation.observed_at
        )

    async def _search_origin(
        self,
        origin: str,
        date_range: DateRange,
        evaluator: DealEvaluator,
        strategy: UpdateStrategy,
        search_mode: SearchMode = SearchMode.FULL,
    ) -> List[DealRecord]:
        itineraries = await self.provider.search_from_origin(origin, date_range)
        return await self._process_itineraries(origin, itineraries, evaluator, strategy, search_mode)

    async def _process_itineraries(
        self,
        origin: str,
        itineraries: List[PricedItinerary],
        evaluator: DealEvaluator,
        strategy: UpdateStrategy,
        search_mode: SearchMode,
    ) -> List[DealRecord]:
        deals = []
        for itinerary in itineraries:
            route_key = RouteKey(origin, itinerary.destination_code)
            now = self.clock()
            verdict = evaluator.evaluate(
                route_key,
                itinerary,
                self.history.get_history(route_key),
                search_mode=search_mode,
                now=now,
            )
            await self.history.record_price(route_key, itinerary.price, now, strategy=strategy)
            if verdict.is_deal:
                deals.append(verdict.deal)
        return deals

    # Quota

    def get_remaining_free_signals(self, identity_id: str) -> int:
        return self.quota.get_remaining(identity_id)

    def consume_free_signal(self, identity_id: str) -> int:
        return self.quota.consume(identity_id)

    async def search_with_quota(
        self,
        identity_id: str,
        origin: str,
        destination: str,
        date_range: Optional[DateRange] = None,
    ) -> Union[QuotaExceeded, SignalSearchResult]:
        if self.quota.get_remaining(identity_id) <= 0:
            logger.info(f"Free signals exhausted for {identity_id}, search not started")
            return QuotaExceeded(identity_id=identity_id, limit=self.quota.limit)

        used = self.quota.consume(identity_id)
        deals = await self.find_deals_for_route(origin, destination, date_range)
        return SignalSearchResult(deals=deals, used=used, remaining=self.quota.get_remaining(identity_id))

    # Persistence

    def save_deals(self, deals: Iterable[DealRecord]) -> int:
        """
        Upsert deals by (origin, destination, departure_date) in one
        transaction, then invalidate the cache for every origin touched.
        Within one call the cheapest deal per trip wins.
        """
        best: Dict[Tuple[str, str, Optional[date]], DealRecord] = {}
        for deal in deals:
            key = (deal.route_key.origin, deal.route_key.destination, deal.departure_date)
            current = best.get(key)
            if current is None or deal.price < current.price:
                best[key] = deal
        if not best:
            return 0

        try:
            for (origin, destination, departure), record in best.items():
                row = self.db.query(FlightDeal).filter(
                    FlightDeal.origin == origin,
                    FlightDeal.destination == destination,
                    FlightDeal.departure_date == departure,
                ).first()
                if row is None:
                    self.db.add(FlightDeal.from_record(record))
                else:
                    row.apply(record)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to save {len(best)} deals: {e}")
            raise

        for origin in {key[0] for key in best}:
            self.cache.invalidate(origin)
        logger.info(f"Saved {len(best)} deals")
        return len(best)

    def get_active_deals(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        limit: Optional[int] = None,
        db: Optional[Session] = None,
    ) -> List[DealRecord]:
        db = db or self.db
        query = db.query(FlightDeal).filter(FlightDeal.expires_at >= self.clock())
        if origin:
            query = query.filter(FlightDeal.origin == origin.strip().upper())
        if destination:
            query = query.filter(FlightDeal.destination == destination.strip().upper())
        query = query.order_by(FlightDeal.discount_percent.desc(), FlightDeal.price)
        if limit:
            query = query.limit(limit)
        return [row.to_record() for row in query.all()]

    def cleanup_expired_deals(self) -> int:
        now = self.clock()
        deleted = self.db.query(FlightDeal).filter(
            FlightDeal.expires_at < now
        ).delete(synchronize_session=False)
        self.db.commit()
        purged = self.cache.purge_expired(self.settings.deal_cache_max_age_seconds)
        logger.info(f"Cleanup removed {deleted} expired deals and {purged} cache entries")
        return deleted

    # Cached reads

    async def _load_active_payload(self, origin: str, destination: Optional[str] = None) -> List[dict]:
        if self.session_factory is None:
            return [d.to_dict() for d in self.get_active_deals(origin, destination)]
        db = self.session_factory()
        try:
            return [d.to_dict() for d in self.get_active_deals(origin, destination, db=db)]
        finally:
            db.close()

    def _decode(self, payload: List[dict]) -> List[DealRecord]:
        now = self.clock()
        deals = [DealRecord.from_dict(d) for d in payload or []]
        return [d for d in deals if not d.is_expired(now)]

    async def _read_through(self, key: str, origin: str, refresher) -> CachedDeals:
        """
        Stale-while-revalidate read. A miss waits for the refresh; a stale
        entry is served immediately while a single background refresh runs.
        """
        read = self.cache.get(key)
        if read is None:
            payload = await self.cache.refresh(key, refresher, origin=origin)
            return CachedDeals(deals=self._decode(payload), stale=False)

        if read.stale:
            logger.warning(f"Serving stale deals for {key}, refreshing in background")
            self.cache.refresh_in_background(key, refresher, origin=origin)
        return CachedDeals(
            deals=self._decode(read.payload),
            stale=read.stale,
            refreshing=self.cache.is_refreshing(key),
        )

    async def get_cached_deals(self, origin: str) -> CachedDeals:
        """Persisted active deals from an origin, through the cache."""
        origin = origin.strip().upper()
        return await self._read_through(
            origin_cache_key(origin), origin, lambda: self._load_active_payload(origin)
        )

    async def get_cached_route_deals(self, origin: str, destination: str) -> CachedDeals:
        """Persisted active deals for one route, through the cache."""
        route_key = RouteKey(origin, destination)
        return await self._read_through(
            route_cache_key(route_key),
            route_key.origin,
            lambda: self._load_active_payload(route_key.origin, route_key.destination),
        )

    async def get_alert_deals(self, alert_id: int) -> Optional[CachedDeals]:
        """Cached matches for one alert; a stale entry triggers a background re-check."""
        key = alert_cache_key(alert_id)
        read = self.cache.get(key)
        if read is None:
            return None
        if read.stale:
            alert = self.db.query(DealAlert).filter(DealAlert.id == alert_id).first()
            if alert is not None:
                origin = alert.origin.strip().upper()
                self.cache.refresh_in_background(
                    key,
                    lambda: self._refresh_alert(alert),
                    ttl=self.settings.alert_cache_ttl_seconds,
                    origin=origin,
                )
        return CachedDeals(
            deals=self._decode(read.payload),
            stale=read.stale,
            refreshing=self.cache.is_refreshing(key),
        )

    async def _refresh_alert(self, alert: DealAlert) -> List[dict]:
        date_range = self.date_range_for(self.settings.interactive_departure_offset_days)
        deals = await self._search_origin(
            alert.origin.strip().upper(), date_range, self.interactive_evaluator, UpdateStrategy.FULL
        )
        return [d.to_dict() for d in deals if alert.matches(d)]

    # Alert management

    @staticmethod
    def _normalize_destination(destination: Optional[str]) -> str:
        code = (destination or "").strip().upper()
        return code or ANYWHERE

    @staticmethod
    def _validate_alert(alert: DealAlert) -> None:
        if alert.date_type == AlertDateType.SPECIFIC:
            if not alert.start_date or not alert.end_date:
                raise ValueError("Specific-date alerts need start_date and end_date")
            if alert.start_date > alert.end_date:
                raise ValueError("start_date must not be after end_date")
        if alert.max_price is not None and alert.max_price <= 0:
            raise ValueError("max_price must be positive")

    def get_user_alerts(self, user_id: str, active_only: bool = False) -> List[DealAlert]:
        query = self.db.query(DealAlert).filter(DealAlert.user_id == user_id)
        if active_only:
            query = query.filter(DealAlert.active == True)
        return query.order_by(DealAlert.id).all()

    def get_user_alert(self, user_id: str, alert_id: int) -> DealAlert:
        alert = self.db.query(DealAlert).filter(
            DealAlert.id == alert_id,
            DealAlert.user_id == user_id,
        ).first()
        if alert is None:
            raise AlertNotFoundError(user_id, alert_id)
        return alert

    def create_alert(
        self,
        user_id: str,
        origin: str,
        destination: Optional[str] = None,
        date_type: AlertDateType = AlertDateType.FLEXIBLE,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        max_price=None,
    ) -> DealAlert:
        """
        Create an alert. An existing alert of the same user with the same
        origin, destination and date type is replaced rather than duplicated.
        """
        origin = (origin or "").strip().upper()
        if not origin:
            raise ValueError("Origin is required")
        destination = self._normalize_destination(destination)
        date_type = AlertDateType(date_type)

        alert = self.db.query(DealAlert).filter(
            DealAlert.user_id == user_id,
            DealAlert.origin == origin,
            DealAlert.destination == destination,
            DealAlert.date_type == date_type,
        ).first()
        if alert is None:
            alert = DealAlert(user_id=user_id, origin=origin, destination=destination, date_type=date_type)
            self.db.add(alert)
        else:
            self.cache.delete(alert_cache_key(alert.id))
            logger.info(f"Replacing alert {alert.id} for {user_id}")

        alert.start_date = start_date
        alert.end_date = end_date
        alert.max_price = max_price
        alert.active = True
        alert.last_checked_at = None
        try:
            self._validate_alert(alert)
        except ValueError:
            self.db.rollback()
            raise
        self.db.commit()
        self.db.refresh(alert)
        logger.info(f"Alert {alert.id} for {user_id}: {origin} -> {destination}")
        return alert

    def update_alert(self, user_id: str, alert_id: int, **changes) -> DealAlert:
        """Apply changes to an alert. Deactivating it clears last_checked_at."""
        unknown = set(changes) - set(ALERT_UPDATE_FIELDS)
        if unknown:
            raise ValueError(f"Alert fields cannot be updated: {', '.join(sorted(unknown))}")

        alert = self.get_user_alert(user_id, alert_id)
        for name, value in changes.items():
            if name == "destination":
                value = self._normalize_destination(value)
            elif name == "date_type":
                value = AlertDateType(value)
            setattr(alert, name, value)
        if changes.get("active") is False:
            alert.last_checked_at = None

        try:
            self._validate_alert(alert)
        except ValueError:
            self.db.rollback()
            raise
        self.db.commit()
        self.db.refresh(alert)
        self.cache.delete(alert_cache_key(alert.id))
        return alert

    def delete_alert(self, user_id: str, alert_id: int) -> None:
        alert = self.get_user_alert(user_id, alert_id)
        self.db.delete(alert)
        self.db.commit()
        self.cache.delete(alert_cache_key(alert_id))
        logger.info(f"Deleted alert {alert_id} for {user_id}")

    # Scheduled work

    def origins_for(self, mode: SearchMode) -> List[str]:
        if mode is SearchMode.LAST_MINUTE:
            return self.rotation.priority_origins()
        return self.rotation.next_group()

    def routes_for(self, origin: str) -> List[str]:
        routes = self.settings.tracked_routes.get(origin, [])
        return list(routes)[:self.settings.max_routes_per_origin]

    async def run_deal_finder(self, mode: SearchMode = SearchMode.FULL) -> DealRunSummary:
        summary = DealRunSummary(mode=mode, started_at=self.clock())
        summary.origins = self.origins_for(mode)
        offset = (
            self.settings.last_minute_departure_offset_days
            if mode is SearchMode.LAST_MINUTE
            else self.settings.full_run_departure_offset_days
        )
        date_range = self.date_range_for(offset)
        logger.info(f"Starting deal finder in {mode.value} mode for {len(summary.origins)} origins: {', '.join(summary.origins)}")

        for origin in summary.origins:
            try:
                if mode is SearchMode.LAST_MINUTE and self.settings.use_anywhere_search:
                    deals = await self._search_origin(
                        origin, date_range, self.batch_evaluator, UpdateStrategy.LIGHT, mode
                    )
                    if deals:
                        self.save_deals(deals)
                    summary.routes_processed += 1
                    summary.deals_found += len(deals)
                else:
                    await self._process_routes(origin, self.routes_for(origin), date_range, mode, summary)
            except Exception as e:
                summary.origins_failed.append(origin)
                logger.error(f"Error processing origin {origin}: {e}")

        summary.finished_at = self.clock()
        logger.info(
            f"Deal finder ({mode.value}) done: {summary.routes_processed} routes, "
            f"{summary.routes_failed} failed, {summary.deals_found} deals"
        )
        return summary

    async def _process_routes(
        self,
        origin: str,
        destinations: List[str],
        date_range: DateRange,
        mode: SearchMode,
        summary: DealRunSummary,
    ) -> None:
        if not destinations:
            logger.warning(f"No routes configured for origin {origin}")
            return

        for number, batch in enumerate(chunked(destinations, self.settings.route_batch_size), start=1):
            logger.info(f"Processing batch {number} for {origin} ({len(batch)} routes)")
            results = await asyncio.gather(
                *(self._process_route(origin, destination, date_range, mode) for destination in batch),
                return_exceptions=True,
            )
            for destination, result in zip(batch, results):
                if isinstance(result, BaseException):
                    summary.routes_failed += 1
                    logger.error(f"Error processing route {origin}-{destination}: {result}")
                else:
                    summary.routes_processed += 1
                    summary.deals_found += len(result)

    async def _process_route(
        self,
        origin: str,
        destination: str,
        date_range: DateRange,
        mode: SearchMode,
    ) -> List[DealRecord]:
        route_key = RouteKey(origin, destination)
        itineraries = await self.provider.search_prices(route_key.origin, route_key.destination, date_range)
        deals = await self._process_itineraries(
            route_key.origin, itineraries, self.batch_evaluator, UpdateStrategy.LIGHT, mode
        )
        if deals:
            self.save_deals(deals)
            logger.info(f"Found and saved {len(deals)} deals for {route_key}")
        return deals

    async def process_alerts(self) -> Dict[int, List[DealRecord]]:
        """
        Check every due alert. Alerts sharing an origin are served by one
        origin-wide search; each alert then keeps only the deals it matches.
        """
        now = self.clock()
        interval = timedelta(hours=self.settings.alert_check_interval_hours)
        alerts = [
            alert for alert in self.db.query(DealAlert).filter(DealAlert.active == True).all()
            if alert.is_due(now, interval)
        ]
        if not alerts:
            logger.info("No deal alerts due")
            return {}

        batches = group_by_origin(alerts)
        logger.info(f"Processing {len(alerts)} alerts in {len(batches)} origin batches")

        matched: Dict[int, List[DealRecord]] = {}
        date_range = self.date_range_for(self.settings.interactive_departure_offset_days)
        for batch in batches:
            origin = batch.origin.upper()
            try:
                deals = await self._search_origin(origin, date_range, self.interactive_evaluator, UpdateStrategy.FULL)
            except UpstreamError as e:
                logger.error(f"Alert search failed for origin {origin}: {e}")
                continue

            if deals:
                self.save_deals(deals)
            for alert in batch.items:
                alert_deals = [d for d in deals if alert.matches(d)]
                matched[alert.id] = alert_deals
                self.cache.put(
                    alert_cache_key(alert.id),
                    [d.to_dict() for d in alert_deals],
                    ttl=self.settings.alert_cache_ttl_seconds,
                    origin=origin,
                )
                alert.last_checked_at = now
            self.db.commit()

        return matched
