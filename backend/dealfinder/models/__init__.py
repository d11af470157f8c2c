# SQLAlchemy models
from dealfinder.models.price_sample import PriceSampleRow
from dealfinder.models.flight_deal import FlightDeal
from dealfinder.models.deal_cache_entry import DealCacheEntry
from dealfinder.models.signal_usage import SignalUsage
from dealfinder.models.deal_alert import DealAlert, AlertDateType

__all__ = [
    "PriceSampleRow",
    "FlightDeal",
    "DealCacheEntry",
    "SignalUsage",
    "DealAlert",
    "AlertDateType",
]
