"""
Tests for distance helpers and the geo index adapters.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.config import Settings
from src.database.models.courier import Courier
from src.services.dispatch.geo import GeoPoint, bounding_box, haversine_distance
from src.services.dispatch.geo_index import (
    CourierCandidate,
    DatabaseGeoIndex,
    RedisGeoIndex,
    build_geo_index,
    rank_candidates,
    rebuild_redis_index,
)

DELIVERY_LATITUDE = 12.9716
DELIVERY_LONGITUDE = 77.5946
DELIVERY_POINT = GeoPoint(DELIVERY_LATITUDE, DELIVERY_LONGITUDE)


def redis_mock(connected: bool = True) -> MagicMock:
    client = MagicMock()
    client.is_connected = connected
    client.geo_search = AsyncMock(return_value=[])
    client.geo_add = AsyncMock(return_value=1)
    client.geo_remove = AsyncMock(return_value=1)
    client.delete = AsyncMock(return_value=1)
    return client


# ============================================================================
# Distance Tests
# ============================================================================


class TestHaversine:
    def test_same_point_is_zero(self) -> None:
        assert haversine_distance(12.97, 77.59, 12.97, 77.59) == 0.0

    def test_one_degree_of_latitude(self) -> None:
        assert haversine_distance(0, 0, 1, 0) == pytest.approx(111_194.93, abs=1)

    def test_known_city_pair(self) -> None:
        # Bengaluru to Chennai, roughly 290 km
        distance = haversine_distance(12.9716, 77.5946, 13.0827, 80.2707)

        assert 285_000 < distance < 295_000

    def test_symmetric(self) -> None:
        forward = haversine_distance(12.9, 77.5, 13.1, 77.7)
        backward = haversine_distance(13.1, 77.7, 12.9, 77.5)

        assert forward == pytest.approx(backward)


class TestBoundingBox:
    def test_box_contains_circle(self) -> None:
        min_lat, max_lat, min_lon, max_lon = bounding_box(DELIVERY_POINT, 10_000)

        north = haversine_distance(
            DELIVERY_POINT.latitude, DELIVERY_POINT.longitude, max_lat, DELIVERY_POINT.longitude
        )
        east = haversine_distance(
            DELIVERY_POINT.latitude, DELIVERY_POINT.longitude, DELIVERY_POINT.latitude, max_lon
        )
        assert north >= 10_000 - 1e-6
        assert east >= 10_000 - 1e-6
        assert min_lat < DELIVERY_POINT.latitude < max_lat
        assert min_lon < DELIVERY_POINT.longitude < max_lon

    def test_pole_spans_all_longitudes(self) -> None:
        _, _, min_lon, max_lon = bounding_box(GeoPoint(90.0, 0.0), 1_000)

        assert (min_lon, max_lon) == (-180.0, 180.0)

    def test_antimeridian_spans_all_longitudes(self) -> None:
        _, _, min_lon, max_lon = bounding_box(GeoPoint(-17.0, 179.95), 20_000)

        assert (min_lon, max_lon) == (-180.0, 180.0)


class TestRankCandidates:
    def test_sorted_by_distance_then_id(self) -> None:
        low_id = uuid.UUID(int=1)
        high_id = uuid.UUID(int=2)
        far = CourierCandidate(uuid.UUID(int=3), 900.0)

        ranked = rank_candidates(
            [far, CourierCandidate(high_id, 100.0), CourierCandidate(low_id, 100.0)],
            limit=10,
        )

        assert [c.courier_id for c in ranked] == [low_id, high_id, far.courier_id]

    def test_limit(self) -> None:
        candidates = [CourierCandidate(uuid.uuid4(), float(i)) for i in range(5)]

        assert len(rank_candidates(candidates, limit=2)) == 2


# ============================================================================
# Database Adapter Tests
# ============================================================================


class TestDatabaseGeoIndex:
    @pytest.mark.asyncio
    async def test_nearest_within_radius(self, db_session, make_courier) -> None:
        far = await make_courier(distance_meters=6_000)
        near = await make_courier(distance_meters=1_000)
        await make_courier(distance_meters=12_000)

        candidates = await DatabaseGeoIndex(db_session).nearest_available(
            DELIVERY_POINT, radius_meters=10_000, limit=10
        )

        assert [c.courier_id for c in candidates] == [near.id, far.id]
        assert candidates[0].distance_meters == pytest.approx(1_000, rel=0.001)

    @pytest.mark.asyncio
    async def test_excludes_unavailable_and_inactive(self, db_session, make_courier) -> None:
        await make_courier(distance_meters=100, available=False)
        await make_courier(distance_meters=100, is_active=False)

        candidates = await DatabaseGeoIndex(db_session).nearest_available(
            DELIVERY_POINT, radius_meters=10_000, limit=10
        )

        assert candidates == []

    @pytest.mark.asyncio
    async def test_limit_keeps_nearest(self, db_session, make_courier) -> None:
        nearest = await make_courier(distance_meters=50)
        await make_courier(distance_meters=500)
        await make_courier(distance_meters=5_000)

        candidates = await DatabaseGeoIndex(db_session).nearest_available(
            DELIVERY_POINT, radius_meters=10_000, limit=1
        )

        assert [c.courier_id for c in candidates] == [nearest.id]

    @pytest.mark.asyncio
    async def test_finds_courier_across_antimeridian(self, db_session) -> None:
        courier = Courier(
            name="Sione",
            phone="+6799000001",
            vehicle_type="bike",
            available=True,
            is_active=True,
            latitude=-17.0,
            longitude=-179.95,
        )
        db_session.add(courier)
        await db_session.commit()

        candidates = await DatabaseGeoIndex(db_session).nearest_available(
            GeoPoint(-17.0, 179.95), radius_meters=20_000, limit=10
        )

        assert [c.courier_id for c in candidates] == [courier.id]
        assert candidates[0].distance_meters < 11_000


# ============================================================================
# Redis Adapter Tests
# ============================================================================


class TestRedisGeoIndex:
    @pytest.mark.asyncio
    async def test_nearest_available_queries_geo_set(self) -> None:
        courier_id = uuid.uuid4()
        client = redis_mock()
        client.geo_search.return_value = [(str(courier_id), 250.0)]
        index = RedisGeoIndex(client, "couriers")

        candidates = await index.nearest_available(DELIVERY_POINT, 5_000, 3)

        assert candidates == [CourierCandidate(courier_id, 250.0)]
        client.geo_search.assert_awaited_once_with(
            "couriers",
            longitude=DELIVERY_LONGITUDE,
            latitude=DELIVERY_LATITUDE,
            radius_meters=5_000,
            count=3,
        )

    @pytest.mark.asyncio
    async def test_malformed_members_are_skipped(self) -> None:
        courier_id = uuid.uuid4()
        client = redis_mock()
        client.geo_search.return_value = [("not-a-uuid", 10.0), (str(courier_id), 20.0)]

        candidates = await RedisGeoIndex(client, "couriers").nearest_available(
            DELIVERY_POINT, 5_000, 3
        )

        assert [c.courier_id for c in candidates] == [courier_id]

    @pytest.mark.asyncio
    async def test_upsert_and_remove(self) -> None:
        courier_id = uuid.uuid4()
        client = redis_mock()
        index = RedisGeoIndex(client, "couriers")

        await index.upsert(courier_id, 12.9, 77.6)
        await index.remove(courier_id)

        client.geo_add.assert_awaited_once_with("couriers", str(courier_id), 77.6, 12.9)
        client.geo_remove.assert_awaited_once_with("couriers", str(courier_id))

    @pytest.mark.asyncio
    async def test_rebuild_indexes_available_couriers(self, db_session, make_courier) -> None:
        available = await make_courier(distance_meters=300)
        await make_courier(available=False)
        client = redis_mock()
        index = RedisGeoIndex(client, "couriers")

        indexed = await rebuild_redis_index(db_session, index)

        assert indexed == 1
        client.delete.assert_awaited_once_with("couriers")
        member = client.geo_add.await_args.args[1]
        assert member == str(available.id)


class TestBuildGeoIndex:
    def test_database_backend(self, db_session) -> None:
        settings = Settings(geo_index_backend="database")

        index = build_geo_index(db_session, redis_mock(), settings)

        assert isinstance(index, DatabaseGeoIndex)

    def test_redis_backend(self, db_session) -> None:
        settings = Settings(geo_index_backend="redis", redis_geo_key="geo:test")

        index = build_geo_index(db_session, redis_mock(), settings)

        assert isinstance(index, RedisGeoIndex)
        assert index.key == "geo:test"

    def test_redis_backend_falls_back_when_disconnected(self, db_session) -> None:
        settings = Settings(geo_index_backend="redis")

        assert isinstance(
            build_geo_index(db_session, redis_mock(connected=False), settings),
            DatabaseGeoIndex,
        )
        assert isinstance(build_geo_index(db_session, None, settings), DatabaseGeoIndex)
