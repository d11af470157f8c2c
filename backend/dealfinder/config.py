from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Literal


class Settings(BaseSettings):
    env: str = "dev"
    database_url: str = "sqlite:///./data/dealfinder.db"

    scheduler_enabled: bool = True

    # Upstream live-prices API
    live_prices_base_url: str = "https://partners.api.skyscanner.net/apiservices/v3"
    live_prices_api_key: str = ""
    live_prices_market: str = "LT"
    live_prices_locale: str = "en-US"
    default_currency: str = "EUR"
    upstream_timeout_seconds: float = 30.0
    max_poll_attempts: int = 5
    poll_interval_seconds: float = 1.0

    # Rate limiting / retries (contract allows 7 req/s)
    requests_per_second: float = 7.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0

    # Price history
    price_history_window_days: int = 90
    price_history_min_entries: int = 3

    # Deal thresholds (percent below rolling average)
    min_discount_percent: float = 20.0
    significant_discount_percent: float = 30.0
    exceptional_discount_percent: float = 40.0
    interactive_last_minute_window_days: int = 7
    interactive_last_minute_discount_percent: float = 15.0
    batch_last_minute_window_days: int = 14
    batch_last_minute_discount_percent: float = 40.0

    # Provisional deals for last-minute runs without history
    provisional_price_floor: float = 150.0
    provisional_discount_percent: int = 20
    provisional_average_multiplier: float = 1.25

    # Deal expiry (hours)
    deal_expiry_hours: int = 24
    significant_deal_expiry_hours: int = 48
    exceptional_deal_expiry_hours: int = 72
    last_minute_expiry_cap_hours: int = 36

    # Deal cache
    deal_cache_ttl_seconds: int = 3600
    alert_cache_ttl_seconds: int = 3 * 3600
    deal_cache_max_age_seconds: int = 24 * 3600

    # Batch deal finder
    route_batch_size: int = 5
    max_routes_per_origin: int = 20
    max_origins_per_day: int = 10
    use_anywhere_search: bool = True
    interactive_departure_offset_days: int = 14
    full_run_departure_offset_days: int = 30
    last_minute_departure_offset_days: int = 7
    trip_length_days: int = 7
    tracked_routes: dict[str, list[str]] = {
        "KUN": ["LON", "BCN", "ROM", "PAR", "BER", "AMS", "MAD", "LIS", "PRG", "VIE"],
        "VNO": ["LON", "BCN", "ROM", "PAR", "BER", "AMS", "MAD", "CPH", "OSL", "HEL"],
        "RIX": ["LON", "BCN", "PAR", "BER"],
        "TLL": ["LON", "HEL", "BER"],
        "WAW": ["LON", "BCN", "ROM", "PAR"],
    }

    # Deal alerts
    alert_check_interval_hours: int = 3

    # Free-tier signals
    free_signal_limit: int = 3
    free_signal_reset_policy: Literal["lifetime", "monthly"] = "lifetime"

    # Scheduled jobs
    full_run_cron_hour: int = 2
    last_minute_run_cron_hour: int = 14
    cleanup_interval_minutes: int = 30

    def model_post_init(self, __context):
        if self.env == "prod" and self.database_url.startswith("sqlite"):
            raise ValueError(
                "Production requires explicit DATABASE_URL (not SQLite)"
            )
        if self.requests_per_second <= 0:
            raise ValueError("REQUESTS_PER_SECOND must be greater than 0")
        if self.route_batch_size <= 0:
            raise ValueError("ROUTE_BATCH_SIZE must be greater than 0")
        if self.free_signal_limit < 0:
            raise ValueError("FREE_SIGNAL_LIMIT cannot be negative")

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
