"""
Process-wide stores, built once at startup and shared by the API and the
scheduler jobs. Database sessions stay per request / per job.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from dealfinder.config import Settings, get_settings
from dealfinder.database import SessionLocal
from dealfinder.services.deal_cache import DealCache, SqlDealCache
from dealfinder.services.deal_service import DealService, OriginRotation
from dealfinder.services.live_prices import LivePricesClient, PriceSearchProvider
from dealfinder.services.price_history import HistoryStore, SqlPriceHistoryStore
from dealfinder.services.request_scheduler import HttpxTransport, RequestScheduler

logger = logging.getLogger(__name__)


@dataclass
class DealRuntime:
    settings: Settings
    session_factory: sessionmaker
    history: HistoryStore
    cache: DealCache
    provider: PriceSearchProvider
    rotation: OriginRotation
    request_scheduler: Optional[RequestScheduler] = None

    def deal_service(self, db: Session) -> DealService:
        return DealService(
            db,
            provider=self.provider,
            history=self.history,
            cache=self.cache,
            settings=self.settings,
            rotation=self.rotation,
            session_factory=self.session_factory,
        )

    async def aclose(self) -> None:
        if self.request_scheduler is not None:
            await self.request_scheduler.close()
            logger.info("Request scheduler closed")


def build_runtime(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    provider: Optional[PriceSearchProvider] = None,
) -> DealRuntime:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal

    request_scheduler = None
    if provider is None:
        transport = HttpxTransport(
            base_url=settings.live_prices_base_url,
            api_key=settings.live_prices_api_key,
            timeout=settings.upstream_timeout_seconds,
        )
        request_scheduler = RequestScheduler(
            transport,
            requests_per_second=settings.requests_per_second,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
        )
        provider = LivePricesClient(request_scheduler, settings)
        if not settings.live_prices_api_key:
            logger.warning("LIVE_PRICES_API_KEY not set; upstream searches will be rejected")

    return DealRuntime(
        settings=settings,
        session_factory=session_factory,
        history=SqlPriceHistoryStore(session_factory, window_days=settings.price_history_window_days),
        cache=SqlDealCache(session_factory, default_ttl=settings.deal_cache_ttl_seconds),
        provider=provider,
        rotation=OriginRotation(settings.tracked_routes.keys(), settings.max_origins_per_day),
        request_scheduler=request_scheduler,
    )
