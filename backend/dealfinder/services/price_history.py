"""
Rolling per-route price baseline.

Two update strategies are available:

- FULL: append, prune samples older than the window, recompute min/max/sum/
  count/average from the retained samples only.
- LIGHT: O(1) update used by scheduled batch runs. The average moves by a
  90/10 exponential weighting (new = (old * 9 + price) / 10), min/max widen,
  nothing is pruned.

A sample identical to one already held for the route (same price, same
observed_at) is ignored by both strategies, so replays never double count.
"""
import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from bisect import insort
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session, sessionmaker

from dealfinder.config import get_settings
from dealfinder.models.price_sample import PriceSampleRow
from dealfinder.services.flights import RouteKey
from dealfinder.utils import utcnow, to_decimal

logger = logging.getLogger(__name__)

EWMA_WEIGHT = Decimal(9)
EWMA_DIVISOR = Decimal(10)


class UpdateStrategy(enum.Enum):
    FULL = "full"
    LIGHT = "light"


@dataclass(frozen=True, order=True)
class PriceSample:
    observed_at: datetime
    price: Decimal


SampleInput = Union[PriceSample, Tuple[object, datetime]]


@dataclass
class RouteHistory:
    route_key: RouteKey
    samples: List[PriceSample] = field(default_factory=list)
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    total: Decimal = Decimal(0)
    count: int = 0
    average: Decimal = Decimal(0)

    @property
    def mean(self) -> Decimal:
        if not self.count:
            return Decimal(0)
        return self.total / self.count

    def contains(self, sample: PriceSample) -> bool:
        return sample in self.samples

    def recompute(self) -> None:
        prices = [s.price for s in self.samples]
        self.count = len(prices)
        self.total = sum(prices, Decimal(0))
        self.min_price = min(prices) if prices else None
        self.max_price = max(prices) if prices else None
        self.average = self.total / self.count if self.count else Decimal(0)

    def snapshot(self) -> "RouteHistory":
        return replace(self, samples=list(self.samples))


class HistoryStore(ABC):
    """Keyed store of route baselines, shared by the service layer and scheduler."""

    @abstractmethod
    async def record_price(
        self,
        route_key: RouteKey,
        price,
        observed_at: Optional[datetime] = None,
        strategy: UpdateStrategy = UpdateStrategy.FULL,
    ) -> RouteHistory:
        pass

    @abstractmethod
    def get_history(self, route_key: RouteKey) -> Optional[RouteHistory]:
        pass


class PriceHistoryStore(HistoryStore):
    """
    In-memory implementation.

    Mutations for one route are serialized by that route's asyncio.Lock;
    different routes never contend.
    """

    def __init__(
        self,
        window_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.window = timedelta(days=window_days or settings.price_history_window_days)
        self.clock = clock
        self._histories: Dict[RouteKey, RouteHistory] = {}
        self._locks: Dict[RouteKey, asyncio.Lock] = {}

    def _lock_for(self, route_key: RouteKey) -> asyncio.Lock:
        lock = self._locks.get(route_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[route_key] = lock
        return lock

    def _history_for(self, route_key: RouteKey) -> RouteHistory:
        history = self._histories.get(route_key)
        if history is None:
            history = self._hydrate(route_key) or RouteHistory(route_key=route_key)
            self._histories[route_key] = history
        return history

    # Persistence hooks, no-ops for the in-memory store
    def _hydrate(self, route_key: RouteKey) -> Optional[RouteHistory]:
        return None

    def _persist(self, route_key: RouteKey, samples: List[PriceSample]) -> None:
        pass

    def _discard_before(self, route_key: RouteKey, cutoff: datetime) -> None:
        pass

    @property
    def routes(self) -> List[RouteKey]:
        return list(self._histories)

    def get_history(self, route_key: RouteKey) -> Optional[RouteHistory]:
        history = self._histories.get(route_key)
        if history is None:
            history = self._hydrate(route_key)
            if history is None:
                return None
            self._histories[route_key] = history
        if not history.count:
            return None
        return history.snapshot()

    async def record_price(
        self,
        route_key: RouteKey,
        price,
        observed_at: Optional[datetime] = None,
        strategy: UpdateStrategy = UpdateStrategy.FULL,
    ) -> RouteHistory:
        sample = PriceSample(observed_at=observed_at or self.clock(), price=to_decimal(price))
        if sample.price <= 0:
            raise ValueError(f"Price must be positive, got {sample.price}")

        async with self._lock_for(route_key):
            history = self._history_for(route_key)
            if history.contains(sample):
                logger.debug(f"Ignoring duplicate sample for {route_key}: {sample.price} at {sample.observed_at}")
                return history.snapshot()

            if strategy is UpdateStrategy.LIGHT:
                self._apply_light(history, sample)
            else:
                insort(history.samples, sample)
                self._prune(history)

            if history.contains(sample):
                self._persist(route_key, [sample])
            return history.snapshot()

    async def record_price_light(
        self,
        route_key: RouteKey,
        price,
        observed_at: Optional[datetime] = None,
    ) -> RouteHistory:
        return await self.record_price(route_key, price, observed_at, strategy=UpdateStrategy.LIGHT)

    async def load_history(self, route_key: RouteKey, samples: Iterable[SampleInput]) -> RouteHistory:
        """Bulk-load historical samples. Always a full recompute."""
        incoming = [
            s if isinstance(s, PriceSample) else PriceSample(observed_at=s[1], price=to_decimal(s[0]))
            for s in samples
        ]
        async with self._lock_for(route_key):
            history = self._history_for(route_key)
            added = []
            for sample in incoming:
                if sample.price <= 0 or history.contains(sample):
                    continue
                insort(history.samples, sample)
                added.append(sample)
            self._prune(history)
            if added:
                self._persist(route_key, added)
            logger.info(f"Loaded {len(added)} historical samples for {route_key} ({history.count} retained)")
            return history.snapshot()

    async def prune(self, route_key: Optional[RouteKey] = None) -> int:
        """Drop samples older than the window for one route or all routes."""
        keys = [route_key] if route_key else list(self._histories)
        dropped = 0
        for key in keys:
            async with self._lock_for(key):
                history = self._history_for(key)
                dropped += self._prune(history)
        return dropped

    def _prune(self, history: RouteHistory) -> int:
        cutoff = self.clock() - self.window
        before = len(history.samples)
        history.samples = [s for s in history.samples if s.observed_at >= cutoff]
        dropped = before - len(history.samples)
        history.recompute()
        if dropped:
            self._discard_before(history.route_key, cutoff)
            logger.debug(f"Pruned {dropped} samples older than {cutoff} for {history.route_key}")
        return dropped

    @staticmethod
    def _apply_light(history: RouteHistory, sample: PriceSample) -> None:
        price = sample.price
        if history.count == 0:
            history.average = price
        else:
            history.average = (history.average * EWMA_WEIGHT + price) / EWMA_DIVISOR
        insort(history.samples, sample)
        history.min_price = price if history.min_price is None else min(history.min_price, price)
        history.max_price = price if history.max_price is None else max(history.max_price, price)
        history.total += price
        history.count += 1


class SqlPriceHistoryStore(PriceHistoryStore):
    """
    Write-through variant. Samples are stored in price_samples; a route is
    rebuilt from the rows inside the window the first time it is touched.

    The light-strategy average lives in memory only. After a restart the
    baseline is the full recompute of the persisted samples.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        window_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(window_days=window_days, clock=clock)
        self.session_factory = session_factory

    def _hydrate(self, route_key: RouteKey) -> Optional[RouteHistory]:
        cutoff = self.clock() - self.window
        db: Session = self.session_factory()
        try:
            rows = db.query(PriceSampleRow.price, PriceSampleRow.observed_at).filter(
                PriceSampleRow.origin == route_key.origin,
                PriceSampleRow.destination == route_key.destination,
                PriceSampleRow.observed_at >= cutoff,
            ).order_by(PriceSampleRow.observed_at).all()
        finally:
            db.close()

        if not rows:
            return None

        history = RouteHistory(route_key=route_key)
        history.samples = sorted({PriceSample(observed_at=r[1], price=to_decimal(r[0])) for r in rows})
        history.recompute()
        logger.debug(f"Hydrated {history.count} samples for {route_key}")
        return history

    def _persist(self, route_key: RouteKey, samples: List[PriceSample]) -> None:
        db: Session = self.session_factory()
        try:
            for sample in samples:
                db.add(PriceSampleRow(
                    origin=route_key.origin,
                    destination=route_key.destination,
                    price=sample.price,
                    observed_at=sample.observed_at,
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _discard_before(self, route_key: RouteKey, cutoff: datetime) -> None:
        db: Session = self.session_factory()
        try:
            db.query(PriceSampleRow).filter(
                PriceSampleRow.origin == route_key.origin,
                PriceSampleRow.destination == route_key.destination,
                PriceSampleRow.observed_at < cutoff,
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()
