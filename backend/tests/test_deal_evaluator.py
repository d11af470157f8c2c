"""Tests for deal scoring against a route baseline."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from dealfinder.config import Settings
from dealfinder.services.deal_evaluator import (
    DealEvaluator,
    DealPolicy,
    SearchMode,
    VerdictReason,
    round_percent,
)
from dealfinder.services.flights import PricedItinerary, RouteKey
from dealfinder.services.price_history import RouteHistory

FIXED_NOW = datetime(2026, 5, 1, 12, 0, 0)
ROUTE = RouteKey("VNO", "BCN")


def _history(average=100, count=10) -> RouteHistory:
    average = Decimal(average)
    return RouteHistory(
        route_key=ROUTE,
        min_price=average,
        max_price=average,
        total=average * count,
        count=count,
        average=average,
    )


def _itinerary(price, days_out=60) -> PricedItinerary:
    return PricedItinerary(
        destination_code="BCN",
        destination_name="Barcelona",
        price=price,
        departure_date=FIXED_NOW.date() + timedelta(days=days_out),
        airline="Ryanair",
        deep_link="https://example.com/book",
    )


@pytest.fixture
def evaluator():
    return DealEvaluator(DealPolicy.interactive(Settings()), clock=lambda: FIXED_NOW)


class TestScenarios:
    def test_price_drop_far_out(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(75, days_out=60), _history())

        assert verdict.is_deal
        assert verdict.reason == VerdictReason.PRICE_DROP
        assert verdict.discount_percent == 25
        assert not verdict.is_last_minute
        assert verdict.deal.expires_at == FIXED_NOW + timedelta(hours=24)
        assert verdict.deal.average_price == Decimal(100)

    def test_last_minute_expiry_capped(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(75, days_out=3), _history())

        assert verdict.is_deal
        assert verdict.is_last_minute
        assert verdict.deal.is_last_minute
        assert verdict.deal.expires_at <= FIXED_NOW + timedelta(hours=36)

    def test_provisional_deal_without_history(self, evaluator):
        verdict = evaluator.evaluate(
            ROUTE, _itinerary(120, days_out=5), None, search_mode=SearchMode.LAST_MINUTE
        )

        assert verdict.is_deal
        assert verdict.reason == VerdictReason.PROVISIONAL
        assert verdict.deal.discount_percent == 20
        assert verdict.deal.average_price == Decimal(150)
        assert verdict.deal.provisional


class TestThresholds:
    def test_exactly_twenty_percent_qualifies(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(Decimal("80.00")), _history())
        assert verdict.is_deal
        assert verdict.discount_percent == 20

    def test_nineteen_point_nine_does_not_qualify(self, evaluator):
        """Rounds to 20 for display, but the threshold uses the raw value."""
        verdict = evaluator.evaluate(ROUTE, _itinerary(Decimal("80.10")), _history())
        assert not verdict.is_deal
        assert verdict.reason == VerdictReason.PRICE_NOT_LOW_ENOUGH
        assert verdict.discount_percent == 20

    def test_interactive_last_minute_threshold(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(84, days_out=5), _history())
        assert verdict.is_deal
        assert verdict.reason == VerdictReason.LAST_MINUTE_DEAL

    def test_batch_policy_uses_wider_window_and_higher_bar(self):
        evaluator = DealEvaluator(DealPolicy.batch(Settings()), clock=lambda: FIXED_NOW)

        far = evaluator.evaluate(ROUTE, _itinerary(84, days_out=12), _history())
        assert far.is_last_minute
        assert not far.is_deal

    def test_policies_follow_settings(self):
        settings = Settings(interactive_last_minute_window_days=3, batch_last_minute_discount_percent=35)
        assert DealPolicy.interactive(settings).last_minute_window_days == 3
        assert DealPolicy.batch(settings).last_minute_discount_percent == Decimal(35)


class TestNonDeals:
    def test_insufficient_history(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(10), _history(count=2))
        assert not verdict.is_deal
        assert verdict.reason == VerdictReason.INSUFFICIENT_HISTORY

    def test_no_provisional_in_full_mode(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(120, days_out=5), None)
        assert verdict.reason == VerdictReason.INSUFFICIENT_HISTORY

    def test_no_provisional_above_floor(self, evaluator):
        verdict = evaluator.evaluate(
            ROUTE, _itinerary(150, days_out=5), None, search_mode=SearchMode.LAST_MINUTE
        )
        assert not verdict.is_deal

    def test_zero_baseline(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(50), _history(average=0))
        assert verdict.reason == VerdictReason.INVALID_BASELINE

    def test_price_above_average(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(130), _history())
        assert not verdict.is_deal
        assert verdict.discount_percent == -30


class TestConfidenceAndExpiry:
    def test_confidence_formula(self, evaluator):
        # 0.5 + (10/20)*0.25 + (25/100)*0.25
        assert evaluator.compute_confidence(10, 25) == pytest.approx(0.6875)

    def test_confidence_capped(self, evaluator):
        assert evaluator.compute_confidence(1000, 90) == 0.99

    def test_expiry_tiers(self, evaluator):
        assert evaluator.calculate_expiry(FIXED_NOW, 25, False) == FIXED_NOW + timedelta(hours=24)
        assert evaluator.calculate_expiry(FIXED_NOW, 30, False) == FIXED_NOW + timedelta(hours=48)
        assert evaluator.calculate_expiry(FIXED_NOW, 45, False) == FIXED_NOW + timedelta(hours=72)
        assert evaluator.calculate_expiry(FIXED_NOW, 45, True) == FIXED_NOW + timedelta(hours=36)

    def test_round_half_up(self):
        assert round_percent(Decimal("24.5")) == 25
        assert round_percent(Decimal("24.49")) == 24

    def test_negative_halves_round_up(self):
        assert round_percent(Decimal("-2.5")) == -2
        assert round_percent(Decimal("-2.51")) == -3
        assert round_percent(Decimal("-0.4")) == 0

    def test_price_keeps_precision(self, evaluator):
        verdict = evaluator.evaluate(ROUTE, _itinerary(Decimal("74.99")), _history())
        assert verdict.deal.price == Decimal("74.99")
        assert verdict.deal.savings == Decimal("25.01")
