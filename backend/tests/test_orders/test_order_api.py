"""
API tests for the order endpoints.

Requests go through the full FastAPI application with the database
dependency pointed at the per-test SQLite database.
"""

import uuid

import pytest

from src.services.orders.enums import OrderStatus


@pytest.fixture
def customer_headers(headers):
    return headers("customer-1", "customer")


@pytest.fixture
def operator_headers(headers):
    return headers("operator-1", "operator")


async def create_order(api_client, customer_headers, order_payload, **kwargs) -> dict:
    response = await api_client.post(
        "/api/v1/orders", json=order_payload(**kwargs), headers=customer_headers
    )
    assert response.status_code == 201, response.text
    return response.json()


# ============================================================================
# Identity Tests
# ============================================================================


class TestActorHeaders:
    @pytest.mark.asyncio
    async def test_missing_identity(self, api_client, order_payload) -> None:
        response = await api_client.post("/api/v1/orders", json=order_payload())

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing actor identity"

    @pytest.mark.asyncio
    async def test_unknown_role(self, api_client, headers, order_payload) -> None:
        response = await api_client.post(
            "/api/v1/orders", json=order_payload(), headers=headers("x", "admin")
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_assumed(
        self, api_client, headers, order_payload
    ) -> None:
        response = await api_client.post(
            "/api/v1/orders", json=order_payload(), headers=headers("x", "system")
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_role_without_capability(
        self, api_client, headers, order_payload
    ) -> None:
        response = await api_client.post(
            "/api/v1/orders",
            json=order_payload(),
            headers=headers(str(uuid.uuid4()), "courier"),
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient permissions"


# ============================================================================
# Placement and Read Tests
# ============================================================================


class TestPlaceAndRead:
    @pytest.mark.asyncio
    async def test_place_order(self, api_client, customer_headers, order_payload) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        assert order["status"] == "PENDING"
        assert order["customer_id"] == "customer-1"
        assert order["pricing"] == {
            "items_total": "420.00",
            "delivery_fee": "30.00",
            "tax": "22.50",
            "discount": "0.00",
            "final_amount": "472.50",
        }
        assert order["items"][0]["subtotal"] == "420.00"
        assert [h["status"] for h in order["status_history"]] == ["PENDING"]
        assert order["courier_assignment"] is None
        assert order["version"] == 1

    @pytest.mark.asyncio
    async def test_validation_error_shape(
        self, api_client, customer_headers, order_payload
    ) -> None:
        payload = order_payload()
        payload["items"] = []

        response = await api_client.post(
            "/api/v1/orders", json=payload, headers=customer_headers
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"][0]["loc"] == ["body", "items"]

    @pytest.mark.asyncio
    async def test_other_customer_is_forbidden(
        self, api_client, customer_headers, headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.get(
            f"/api/v1/orders/{order['id']}", headers=headers("customer-2", "customer")
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "FORBIDDEN"
        assert "request_id" in body

    @pytest.mark.asyncio
    async def test_unknown_order(self, api_client, operator_headers) -> None:
        response = await api_client.get(
            f"/api/v1/orders/{uuid.uuid4()}", headers=operator_headers
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_get_by_number_is_case_insensitive(
        self, api_client, customer_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.get(
            f"/api/v1/orders/number/{order['order_number'].lower()}",
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_customers_list_only_their_orders(
        self, api_client, customer_headers, headers, order_payload, operator_headers
    ) -> None:
        await create_order(api_client, customer_headers, order_payload)
        await create_order(api_client, headers("customer-2", "customer"), order_payload)

        mine = await api_client.get("/api/v1/orders", headers=customer_headers)
        everything = await api_client.get("/api/v1/orders", headers=operator_headers)

        assert mine.json()["total"] == 1
        assert mine.json()["items"][0]["customer_id"] == "customer-1"
        assert everything.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_sort(self, api_client, operator_headers) -> None:
        response = await api_client.get(
            "/api/v1/orders", params={"sort": "customer"}, headers=operator_headers
        )

        assert response.status_code == 400


# ============================================================================
# Transition Tests
# ============================================================================


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_ready_without_courier_stays_ready(
        self, api_client, customer_headers, operator_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "ready"},
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "READY"
        assert response.json()["courier_assignment"] is None

    @pytest.mark.asyncio
    async def test_ready_dispatches_nearest_courier(
        self, api_client, customer_headers, operator_headers, order_payload, make_courier
    ) -> None:
        await make_courier(name="Far", distance_meters=5_000)
        near = await make_courier(name="Near", distance_meters=2_000)
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "READY", "note": "Packed"},
            headers=operator_headers,
        )

        body = response.json()
        assert body["status"] == "OUT_FOR_DELIVERY"
        assert body["courier_assignment"]["courier_id"] == str(near.id)
        assert body["courier_assignment"]["name"] == "Near"
        assert [h["status"] for h in body["status_history"]] == [
            "PENDING",
            "READY",
            "OUT_FOR_DELIVERY",
        ]
        assert body["status_history"][-1]["actor_role"] == "system"

    @pytest.mark.asyncio
    async def test_invalid_transition(
        self, api_client, customer_headers, operator_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "DELIVERED"},
            headers=operator_headers,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_TRANSITION"
        assert body["details"]["current_state"] == "PENDING"

    @pytest.mark.asyncio
    async def test_unknown_status_is_validation_error(
        self, api_client, customer_headers, operator_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "SHIPPED"},
            headers=operator_headers,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_customer_cancels_pending_order(
        self, api_client, customer_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)

        response = await api_client.post(
            f"/api/v1/orders/{order['id']}/cancel",
            json={"reason": "Ordered twice"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["cancellation_reason"] == "Ordered twice"

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_ready_order(
        self, api_client, customer_headers, operator_headers, order_payload
    ) -> None:
        order = await create_order(api_client, customer_headers, order_payload)
        await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "READY"},
            headers=operator_headers,
        )

        response = await api_client.post(
            f"/api/v1/orders/{order['id']}/cancel", headers=customer_headers
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_cod_delivery_requires_session(
        self, api_client, customer_headers, operator_headers, headers, order_payload, make_courier
    ) -> None:
        courier = await make_courier()
        order = await create_order(api_client, customer_headers, order_payload)
        await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "READY"},
            headers=operator_headers,
        )

        response = await api_client.patch(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "DELIVERED"},
            headers=headers(str(courier.id), "courier"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "NO_ACTIVE_SESSION"


# ============================================================================
# Dispatch Endpoint Tests
# ============================================================================


class TestDispatchEndpoints:
    @pytest.mark.asyncio
    async def test_dispatch_without_courier_returns_accepted(
        self, api_client, operator_headers, place_order
    ) -> None:
        order = await place_order(status=OrderStatus.READY)

        response = await api_client.post(
            f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers
        )

        assert response.status_code == 202
        assert response.json()["outcome"] == "NO_COURIER_AVAILABLE"
        assert response.json()["courier_id"] is None

    @pytest.mark.asyncio
    async def test_dispatch_assigns_courier(
        self, api_client, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier(distance_meters=700)
        order = await place_order(status=OrderStatus.READY)

        response = await api_client.post(
            f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "ASSIGNED"
        assert body["courier_id"] == str(courier.id)
        assert body["distance_meters"] == pytest.approx(700, rel=0.01)

    @pytest.mark.asyncio
    async def test_dispatch_pending_order_is_invalid(
        self, api_client, operator_headers, place_order
    ) -> None:
        order = await place_order()

        response = await api_client.post(
            f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_manual_assignment(
        self, api_client, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier(distance_meters=3_000)
        order = await place_order(status=OrderStatus.READY)

        response = await api_client.post(
            f"/api/v1/orders/{order.id}/assign",
            json={"courier_id": str(courier.id)},
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["courier_id"] == str(courier.id)

    @pytest.mark.asyncio
    async def test_courier_sees_assigned_orders(
        self, api_client, operator_headers, headers, place_order, make_courier
    ) -> None:
        courier = await make_courier()
        order = await place_order(status=OrderStatus.READY)
        await api_client.post(f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers)

        response = await api_client.get(
            "/api/v1/orders/assigned/me", headers=headers(str(courier.id), "courier")
        )

        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [str(order.id)]

    @pytest.mark.asyncio
    async def test_customer_cannot_dispatch(
        self, api_client, customer_headers, place_order
    ) -> None:
        order = await place_order(status=OrderStatus.READY)

        response = await api_client.post(
            f"/api/v1/orders/{order.id}/dispatch", headers=customer_headers
        )

        assert response.status_code == 403


# ============================================================================
# Tracking and Statistics Tests
# ============================================================================


class TestTrackingEndpoint:
    @pytest.mark.asyncio
    async def test_customer_tracks_assigned_order(
        self, api_client, customer_headers, operator_headers, place_order, make_courier
    ) -> None:
        courier = await make_courier(distance_meters=400)
        order = await place_order(status=OrderStatus.READY)
        await api_client.post(f"/api/v1/orders/{order.id}/dispatch", headers=operator_headers)

        response = await api_client.get(
            f"/api/v1/orders/{order.id}/track", headers=customer_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OUT_FOR_DELIVERY"
        assert [h["status"] for h in body["status_history"]] == [
            "PENDING",
            "READY",
            "OUT_FOR_DELIVERY",
        ]
        assert body["courier_assignment"]["courier_id"] == str(courier.id)
        assert body["current_location"]["latitude"] == pytest.approx(courier.latitude)
        assert body["current_location"]["longitude"] == pytest.approx(courier.longitude)

    @pytest.mark.asyncio
    async def test_unassigned_order_has_no_location(
        self, api_client, customer_headers, place_order
    ) -> None:
        order = await place_order()

        response = await api_client.get(
            f"/api/v1/orders/{order.id}/track", headers=customer_headers
        )

        assert response.json()["current_location"] is None
        assert response.json()["courier_assignment"] is None

    @pytest.mark.asyncio
    async def test_other_customer_is_forbidden(self, api_client, headers, place_order) -> None:
        order = await place_order()

        response = await api_client.get(
            f"/api/v1/orders/{order.id}/track", headers=headers("customer-2", "customer")
        )

        assert response.status_code == 403


class TestStatsEndpoint:
    @pytest.mark.asyncio
    async def test_operator_sees_totals(
        self, api_client, operator_headers, place_order
    ) -> None:
        pending = await place_order()
        ready = await place_order(status=OrderStatus.READY)

        response = await api_client.get("/api/v1/orders/stats", headers=operator_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_orders"] == 2
        assert body["total_revenue"] == str(pending.final_amount + ready.final_amount)
        assert {row["status"]: row["count"] for row in body["by_status"]} == {
            "PENDING": 1,
            "READY": 1,
        }
        assert body["by_payment_method"][0]["payment_method"] == "CASH_ON_DELIVERY"

    @pytest.mark.asyncio
    async def test_customers_cannot_see_stats(self, api_client, customer_headers) -> None:
        response = await api_client.get("/api/v1/orders/stats", headers=customer_headers)

        assert response.status_code == 403
