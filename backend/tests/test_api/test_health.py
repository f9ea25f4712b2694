"""
Tests for health endpoints and response middleware.
"""

from unittest.mock import AsyncMock, patch

import pytest

from src.main import app


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, api_client) -> None:
        response = await api_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"

    @pytest.mark.asyncio
    async def test_live(self, api_client) -> None:
        response = await api_client.get("/live")

        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready(self, api_client) -> None:
        with patch("src.main.check_database_health", AsyncMock(return_value=True)):
            response = await api_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert response.json()["redis"] == "not_configured"

    @pytest.mark.asyncio
    async def test_not_ready_when_database_down(self, api_client) -> None:
        with patch("src.main.check_database_health", AsyncMock(return_value=False)):
            response = await api_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["database"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_not_ready_when_redis_down(self, api_client) -> None:
        redis_client = AsyncMock()
        redis_client.health_check.return_value = False
        app.state.redis_client = redis_client

        with patch("src.main.check_database_health", AsyncMock(return_value=True)):
            response = await api_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["redis"] == "unhealthy"


class TestResponseHeaders:
    @pytest.mark.asyncio
    async def test_security_headers(self, api_client) -> None:
        response = await api_client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, api_client) -> None:
        response = await api_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
