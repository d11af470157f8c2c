"""Tests for the live-prices adapter: polling state machine and payload normalization."""
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dealfinder.config import Settings
from dealfinder.exceptions import UpstreamClientError, UpstreamError, UpstreamServerError
from dealfinder.services.flights import DateRange
from dealfinder.services.live_prices import (
    RESULT_STATUS_COMPLETE,
    LivePricesClient,
    LivePricesSearch,
    SearchState,
    normalize_live_prices,
)


def _content():
    return {
        "itineraries": {"results": [
            {
                "legIds": ["leg-out", "leg-back"],
                "pricingOptions": [
                    {"price": {"amount": 120, "unit": "EUR"}, "items": [{"deepLink": "https://book/expensive"}]},
                    {"price": {"amount": 89.5, "unit": "EUR"}, "items": [{"deepLink": "https://book/cheap"}]},
                ],
            },
            {"legIds": ["leg-lon"], "pricingOptions": [{"price": {"amount": 60}, "items": []}]},
            {"legIds": ["leg-missing"], "pricingOptions": [{"price": {"amount": 10}}]},
            {"legIds": ["leg-out"], "pricingOptions": []},
            {"legIds": ["leg-out"], "pricingOptions": [{"price": {}}]},
        ]},
        "legs": [
            {
                "id": "leg-out",
                "destinationPlaceId": "p-bcn",
                "departureDateTime": {"year": 2026, "month": 6, "day": 1},
                "carriers": {"marketing": [{"id": "c-fr"}]},
            },
            {
                "id": "leg-back",
                "destinationPlaceId": "p-vno",
                "departureDateTime": {"year": 2026, "month": 6, "day": 8},
            },
            {
                "id": "leg-lon",
                "destinationPlaceId": "p-lon",
                "departureDateTime": {"year": 2026, "month": 6, "day": 3},
            },
        ],
        "places": [
            {"entityId": "p-bcn", "iata": "BCN", "name": "Barcelona"},
            {"entityId": "p-lon", "iata": "lon", "name": "London"},
            {"entityId": "p-vno", "iata": "VNO", "name": "Vilnius"},
        ],
        "carriers": [{"id": "c-fr", "name": "Ryanair"}],
    }


class TestNormalize:
    def test_cheapest_option_per_itinerary(self):
        results = normalize_live_prices(_content(), "vno")

        assert len(results) == 2
        bcn = results[0]
        assert bcn.destination_code == "BCN"
        assert bcn.destination_name == "Barcelona"
        assert bcn.price == Decimal("89.5")
        assert bcn.deep_link == "https://book/cheap"
        assert bcn.departure_date == date(2026, 6, 1)
        assert bcn.return_date == date(2026, 6, 8)
        assert bcn.airline == "Ryanair"

    def test_defaults_for_missing_fields(self):
        lon = normalize_live_prices(_content(), "VNO")[1]
        assert lon.destination_code == "LON"
        assert lon.airline == "Unknown"
        assert lon.deep_link == ""
        assert lon.currency == "EUR"
        assert lon.return_date is None

    def test_empty_payload(self):
        assert normalize_live_prices(None, "VNO") == []
        assert normalize_live_prices({}, "VNO") == []

    def test_dict_shaped_collections(self):
        content = _content()
        content["legs"] = {leg["id"]: leg for leg in content["legs"]}
        content["places"] = {p["entityId"]: p for p in content["places"]}
        assert len(normalize_live_prices(content, "VNO")) == 2


def _scheduler(*responses):
    scheduler = AsyncMock()
    scheduler.enqueue = AsyncMock(side_effect=list(responses))
    return scheduler


async def _no_sleep(seconds):
    return None


class TestLivePricesSearch:
    async def test_completes_after_polling(self):
        scheduler = _scheduler(
            {"sessionToken": "tok", "status": "RESULT_STATUS_INCOMPLETE"},
            {"status": "RESULT_STATUS_INCOMPLETE"},
            {"status": RESULT_STATUS_COMPLETE, "content": {}},
        )
        search = LivePricesSearch(scheduler, "https://upstream.test/v3/", {"query": {}}, sleep=_no_sleep)
        assert search.state is SearchState.CREATED

        result = await search.run()

        assert search.state is SearchState.COMPLETE
        assert search.attempts == 2
        assert result["status"] == RESULT_STATUS_COMPLETE
        poll_call = scheduler.enqueue.call_args_list[1].args[0]
        assert poll_call["url"] == "https://upstream.test/v3/flights/live/search/poll/tok"

    async def test_times_out(self):
        scheduler = _scheduler(
            {"sessionToken": "tok"},
            *[{"status": "RESULT_STATUS_INCOMPLETE"}] * 3,
        )
        search = LivePricesSearch(scheduler, "https://upstream.test", {}, max_attempts=3, sleep=_no_sleep)

        assert await search.run() is None
        assert search.state is SearchState.TIMED_OUT
        assert search.attempts == 3

    async def test_create_failure(self):
        scheduler = _scheduler(UpstreamClientError("bad request", 400))
        search = LivePricesSearch(scheduler, "https://upstream.test", {}, sleep=_no_sleep)

        with pytest.raises(UpstreamClientError):
            await search.run()
        assert search.state is SearchState.FAILED

    async def test_missing_session_token(self):
        search = LivePricesSearch(_scheduler({}), "https://upstream.test", {}, sleep=_no_sleep)
        with pytest.raises(UpstreamError):
            await search.run()
        assert search.state is SearchState.FAILED

    async def test_poll_error_then_complete(self):
        scheduler = _scheduler(
            {"sessionToken": "tok"},
            UpstreamServerError("boom", 502),
            {"status": RESULT_STATUS_COMPLETE},
        )
        search = LivePricesSearch(scheduler, "https://upstream.test", {}, sleep=_no_sleep)
        await search.run()
        assert search.state is SearchState.COMPLETE
        assert search.attempts == 2

    async def test_complete_on_create(self):
        search = LivePricesSearch(
            _scheduler({"sessionToken": "tok", "status": RESULT_STATUS_COMPLETE}),
            "https://upstream.test",
            {},
            sleep=_no_sleep,
        )
        await search.run()
        assert search.state is SearchState.COMPLETE
        assert search.attempts == 0


class TestLivePricesClient:
    def _client(self, *responses):
        settings = Settings(poll_interval_seconds=0.0, live_prices_base_url="https://upstream.test")
        return LivePricesClient(_scheduler(*responses), settings)

    def test_round_trip_query(self):
        client = self._client()
        query = client.build_query("vno", "bcn", DateRange(date(2026, 6, 1), date(2026, 6, 8)))["query"]

        assert len(query["queryLegs"]) == 2
        assert query["queryLegs"][0]["originPlaceId"] == {"iata": "VNO"}
        assert query["queryLegs"][1]["destinationPlaceId"] == {"iata": "VNO"}
        assert query["queryLegs"][0]["date"] == {"year": 2026, "month": 6, "day": 1}
        assert query["market"] == "LT"

    def test_anywhere_query(self):
        query = self._client().build_query("VNO", None, DateRange(date(2026, 6, 1), date(2026, 6, 8)))["query"]
        assert query["queryLegs"][0]["destinationPlaceId"] == {"anywhere": True}
        assert len(query["queryLegs"]) == 1

    async def test_search_prices_filters_destination(self):
        client = self._client(
            {"sessionToken": "tok", "status": RESULT_STATUS_COMPLETE, "content": _content()},
        )
        results = await client.search_prices("VNO", "BCN", DateRange(date(2026, 6, 1)))
        assert [r.destination_code for r in results] == ["BCN"]

    async def test_search_from_origin(self):
        client = self._client(
            {"sessionToken": "tok", "status": RESULT_STATUS_COMPLETE, "content": _content()},
        )
        results = await client.search_from_origin("VNO", DateRange(date(2026, 6, 1)))
        assert {r.destination_code for r in results} == {"BCN", "LON"}
