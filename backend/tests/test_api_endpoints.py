"""Tests for API endpoints."""
from datetime import timedelta
from decimal import Decimal

from dealfinder.models.flight_deal import FlightDeal
from dealfinder.services.flights import DealRecord, RouteKey
from dealfinder.utils import utcnow


def _add_deal(db_session, destination="BCN", price="75", expires_in=timedelta(hours=24)):
    now = utcnow()
    record = DealRecord(
        id=f"deal-VNO-{destination}-test",
        route_key=RouteKey("VNO", destination),
        destination_name="Barcelona",
        price=Decimal(price),
        currency="EUR",
        discount_percent=25,
        average_price=Decimal("100"),
        is_last_minute=False,
        confidence=0.69,
        deep_link="https://book.example/deal",
        created_at=now,
        expires_at=now + expires_in,
        departure_date=now.date() + timedelta(days=30),
    )
    db_session.add(FlightDeal.from_record(record))
    db_session.commit()
    return record


class TestOriginDeals:
    async def test_empty(self, client, db_session):
        response = await client.get("/deals/VNO")
        assert response.status_code == 200
        data = response.json()
        assert data["origin"] == "VNO"
        assert data["count"] == 0
        assert data["stale"] is False

    async def test_lists_active_deals(self, client, db_session):
        _add_deal(db_session, "BCN")
        _add_deal(db_session, "LON", expires_in=timedelta(hours=-1))

        response = await client.get("/deals/vno")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        deal = data["deals"][0]
        assert deal["destination"] == "BCN"
        assert deal["discount_percent"] == 25
        assert Decimal(deal["savings"]) == Decimal(25)

    async def test_limit_validation(self, client):
        response = await client.get("/deals/VNO", params={"limit": 0})
        assert response.status_code == 422


class TestRouteDeals:
    async def test_persisted_deals_without_identity(self, client, db_session, fake_provider):
        _add_deal(db_session, "BCN")

        response = await client.get("/deals/VNO/BCN")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["remaining"] == 0
        assert data["stale"] is False
        assert fake_provider.calls == []

    async def test_identity_spends_signals_then_402(self, client, fake_provider):
        for expected in (2, 1, 0):
            response = await client.get("/deals/VNO/BCN", params={"identity_id": "user-1"})
            assert response.status_code == 200
            assert response.json()["remaining"] == expected

        response = await client.get("/deals/VNO/BCN", params={"identity_id": "user-1"})

        assert response.status_code == 402
        assert "user-1" in response.json()["detail"]
        assert len(fake_provider.calls) == 3

    async def test_explicit_dates_passed_upstream(self, client, fake_provider):
        response = await client.get(
            "/deals/VNO/BCN",
            params={"identity_id": "user-2", "departure_date": "2026-06-01", "return_date": "2026-06-08"},
        )
        assert response.status_code == 200
        date_range = fake_provider.calls[0][2]
        assert date_range.departure.isoformat() == "2026-06-01"
        assert date_range.inbound.isoformat() == "2026-06-08"


class TestSignalsAPI:
    async def test_status_for_new_identity(self, client):
        response = await client.get("/signals/user-1")
        assert response.status_code == 200
        assert response.json() == {"identity_id": "user-1", "limit": 3, "remaining": 3, "used": None}

    async def test_consume(self, client):
        for _ in range(4):
            response = await client.post("/signals/user-1/consume")
        data = response.json()
        assert data["used"] == 3
        assert data["remaining"] == 0


class TestAlertsAPI:
    async def test_create_list_update_delete(self, client):
        response = await client.post("/alerts/user-1", json={"origin": "vno", "max_price": "80"})
        assert response.status_code == 200
        alert = response.json()
        assert alert["origin"] == "VNO"
        assert alert["destination"] == "ANYWHERE"
        assert alert["date_type"] == "flexible"
        assert alert["active"] is True

        response = await client.get("/alerts/user-1")
        assert [a["id"] for a in response.json()] == [alert["id"]]

        response = await client.put(f"/alerts/user-1/{alert['id']}", json={"active": False})
        assert response.status_code == 200
        assert response.json()["active"] is False

        response = await client.get("/alerts/user-1", params={"active_only": True})
        assert response.json() == []

        response = await client.delete(f"/alerts/user-1/{alert['id']}")
        assert response.json() == {"status": "deleted", "id": alert["id"]}

    async def test_invalid_specific_dates(self, client):
        response = await client.post(
            "/alerts/user-1",
            json={"origin": "VNO", "date_type": "specific", "start_date": "2026-06-10", "end_date": "2026-06-01"},
        )
        assert response.status_code == 400

    async def test_missing_alert(self, client):
        assert (await client.put("/alerts/user-1/999", json={"active": False})).status_code == 404
        assert (await client.delete("/alerts/user-1/999")).status_code == 404
        assert (await client.get("/alerts/user-1/999/deals")).status_code == 404

    async def test_alert_deals_empty_before_first_check(self, client):
        alert = (await client.post("/alerts/user-1", json={"origin": "VNO", "destination": "BCN"})).json()

        response = await client.get(f"/alerts/user-1/{alert['id']}/deals")

        assert response.status_code == 200
        assert response.json()["count"] == 0
