"""
API tests for courier registration, location and availability.
"""

import uuid

import pytest

from src.services.events.bus import order_topic, role_topic
from src.services.orders.enums import ActorRole, OrderStatus

LATITUDE = 12.9716
LONGITUDE = 77.5946


@pytest.fixture
def operator_headers(headers):
    return headers("operator-1", "operator")


def courier_body(phone: str = "+919811111111", **overrides) -> dict:
    body = {
        "name": "Ravi Kumar",
        "phone": phone,
        "vehicle_type": "scooter",
        "vehicle_number": "KA01AB1234",
        "latitude": LATITUDE,
        "longitude": LONGITUDE,
    }
    body.update(overrides)
    return body


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_courier(self, api_client, operator_headers) -> None:
        response = await api_client.post(
            "/api/v1/couriers", json=courier_body(), headers=operator_headers
        )

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Ravi Kumar"
        assert body["available"] is False
        assert body["is_active"] is True
        assert body["location_updated_at"] is not None

    @pytest.mark.asyncio
    async def test_duplicate_phone_conflicts(self, api_client, operator_headers) -> None:
        await api_client.post("/api/v1/couriers", json=courier_body(), headers=operator_headers)

        response = await api_client.post(
            "/api/v1/couriers", json=courier_body(), headers=operator_headers
        )

        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_location_pair_required(self, api_client, operator_headers) -> None:
        response = await api_client.post(
            "/api/v1/couriers",
            json=courier_body(longitude=None),
            headers=operator_headers,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_customers_cannot_register(self, api_client, headers) -> None:
        response = await api_client.post(
            "/api/v1/couriers", json=courier_body(), headers=headers("c", "customer")
        )

        assert response.status_code == 403


class TestCourierSelfService:
    @pytest.mark.asyncio
    async def test_profile(self, api_client, headers, make_courier) -> None:
        courier = await make_courier(name="Ravi")

        response = await api_client.get(
            "/api/v1/couriers/me", headers=headers(str(courier.id), "courier")
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Ravi"

    @pytest.mark.asyncio
    async def test_profile_requires_courier_role(self, api_client, operator_headers) -> None:
        response = await api_client.get("/api/v1/couriers/me", headers=operator_headers)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_non_uuid_courier_id(self, api_client, headers) -> None:
        response = await api_client.get(
            "/api/v1/couriers/me", headers=headers("not-a-uuid", "courier")
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_location_update_reaches_trackers(
        self, api_client, bus, headers, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier()
        order = await place_order(status=OrderStatus.READY)
        await api_client.post(f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers)
        tracker = bus.subscribe(order_topic(order.id))
        operators = bus.subscribe(role_topic(ActorRole.OPERATOR))

        response = await api_client.patch(
            "/api/v1/couriers/me/location",
            json={"latitude": 12.98, "longitude": 77.6},
            headers=headers(str(courier.id), "courier"),
        )

        assert response.status_code == 200
        assert response.json()["latitude"] == 12.98
        tracked = await tracker.get()
        assert tracked.type == "courier_location"
        assert tracked.payload["order_id"] == str(order.id)
        assert (await operators.get()).payload["courier_id"] == str(courier.id)

    @pytest.mark.asyncio
    async def test_availability_toggle(self, api_client, headers, make_courier) -> None:
        courier = await make_courier(available=False)
        courier_headers = headers(str(courier.id), "courier")

        on = await api_client.patch(
            "/api/v1/couriers/me/availability",
            json={"available": True},
            headers=courier_headers,
        )
        off = await api_client.patch(
            "/api/v1/couriers/me/availability",
            json={"available": False},
            headers=courier_headers,
        )

        assert on.json()["available"] is True
        assert off.json()["available"] is False

    @pytest.mark.asyncio
    async def test_inactive_courier_cannot_become_available(
        self, api_client, headers, make_courier
    ) -> None:
        courier = await make_courier(available=False, is_active=False)

        response = await api_client.patch(
            "/api/v1/couriers/me/availability",
            json={"available": True},
            headers=headers(str(courier.id), "courier"),
        )

        assert response.status_code == 404


class TestOperatorQueries:
    @pytest.mark.asyncio
    async def test_available_nearest_first(
        self, api_client, operator_headers, make_courier
    ) -> None:
        far = await make_courier(distance_meters=4_000)
        near = await make_courier(distance_meters=1_000)
        await make_courier(distance_meters=500, available=False)

        response = await api_client.get(
            "/api/v1/couriers/available",
            params={"latitude": LATITUDE, "longitude": LONGITUDE, "radius_meters": 5_000},
            headers=operator_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert [c["courier"]["id"] for c in body] == [str(near.id), str(far.id)]
        assert body[0]["distance_meters"] == pytest.approx(1_000, rel=0.01)

    @pytest.mark.asyncio
    async def test_available_without_point(
        self, api_client, operator_headers, make_courier
    ) -> None:
        await make_courier()

        response = await api_client.get(
            "/api/v1/couriers/available", headers=operator_headers
        )

        assert len(response.json()) == 1
        assert response.json()[0]["distance_meters"] is None

    @pytest.mark.asyncio
    async def test_get_unknown_courier(self, api_client, operator_headers) -> None:
        response = await api_client.get(
            f"/api/v1/couriers/{uuid.uuid4()}", headers=operator_headers
        )

        assert response.status_code == 404


class TestCourierStatsEndpoint:
    @pytest.mark.asyncio
    async def test_stats_with_open_session(
        self, api_client, headers, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier(available=False)
        courier_headers = headers(str(courier.id), "courier")
        started = await api_client.post("/api/v1/sessions/start", headers=courier_headers)
        order = await place_order(status=OrderStatus.READY)
        await api_client.post(f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers)

        response = await api_client.get("/api/v1/couriers/me/stats", headers=courier_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["courier"]["id"] == str(courier.id)
        assert body["orders_by_status"] == {"OUT_FOR_DELIVERY": 1}
        assert body["delivered"] == 0
        assert body["active_session"]["id"] == started.json()["id"]

    @pytest.mark.asyncio
    async def test_stats_require_courier_role(self, api_client, operator_headers) -> None:
        response = await api_client.get("/api/v1/couriers/me/stats", headers=operator_headers)

        assert response.status_code == 403


class TestDeactivation:
    @pytest.mark.asyncio
    async def test_deactivate_idle_courier(
        self, api_client, operator_headers, make_courier
    ) -> None:
        courier = await make_courier()

        response = await api_client.delete(
            f"/api/v1/couriers/{courier.id}", headers=operator_headers
        )
        available = await api_client.get("/api/v1/couriers/available", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert response.json()["available"] is False
        assert available.json() == []

    @pytest.mark.asyncio
    async def test_refused_with_order_out_for_delivery(
        self, api_client, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier()
        order = await place_order(status=OrderStatus.READY)
        await api_client.post(f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers)

        response = await api_client.delete(
            f"/api/v1/couriers/{courier.id}", headers=operator_headers
        )

        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_couriers_cannot_deactivate(self, api_client, headers, make_courier) -> None:
        courier = await make_courier()

        response = await api_client.delete(
            f"/api/v1/couriers/{courier.id}", headers=headers(str(courier.id), "courier")
        )

        assert response.status_code == 403
