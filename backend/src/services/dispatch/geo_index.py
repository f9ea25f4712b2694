"""
Geo index adapters for nearest-available-courier queries.

Two adapters implement the same ``GeoIndex`` protocol:

- ``DatabaseGeoIndex`` scans available couriers in the order store within a
  latitude/longitude box and ranks them by haversine distance.
- ``RedisGeoIndex`` keeps available couriers in a Redis GEO set and asks
  Redis for the nearest members.

Both return candidates sorted by distance, ties broken by courier id.
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.cache.redis_client import RedisClient
from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.services.couriers.repository import CourierRepository
from src.services.dispatch.geo import GeoPoint, bounding_box, haversine_distance

logger = get_logger(__name__)


@dataclass(frozen=True)
class CourierCandidate:
    courier_id: uuid.UUID
    distance_meters: float


def rank_candidates(
    candidates: Sequence[CourierCandidate], limit: int
) -> list[CourierCandidate]:
    """Sort by distance then courier id and keep the first ``limit``."""
    ranked = sorted(candidates, key=lambda c: (c.distance_meters, str(c.courier_id)))
    return ranked[:limit]


class GeoIndex(Protocol):
    """Spatial lookup of available couriers."""

    async def nearest_available(
        self, point: GeoPoint, radius_meters: float, limit: int
    ) -> list[CourierCandidate]:
        ...

    async def upsert(self, courier_id: uuid.UUID, latitude: float, longitude: float) -> None:
        ...

    async def remove(self, courier_id: uuid.UUID) -> None:
        ...


class DatabaseGeoIndex:
    """Geo index backed by the courier table."""

    def __init__(self, session: AsyncSession):
        self.repository = CourierRepository(session)

    async def nearest_available(
        self, point: GeoPoint, radius_meters: float, limit: int
    ) -> list[CourierCandidate]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_meters)
        couriers = await self.repository.list_available(
            min_latitude=min_lat,
            max_latitude=max_lat,
            min_longitude=min_lon,
            max_longitude=max_lon,
        )

        candidates = []
        for courier in couriers:
            distance = haversine_distance(
                point.latitude, point.longitude, courier.latitude, courier.longitude
            )
            if distance <= radius_meters:
                candidates.append(CourierCandidate(courier.id, distance))

        return rank_candidates(candidates, limit)

    # The courier table is the index; availability and location writes
    # already land there.
    async def upsert(self, courier_id: uuid.UUID, latitude: float, longitude: float) -> None:
        return None

    async def remove(self, courier_id: uuid.UUID) -> None:
        return None


class RedisGeoIndex:
    """Geo index backed by a Redis GEO set of available couriers."""

    def __init__(self, redis_client: RedisClient, key: str):
        self.redis = redis_client
        self.key = key

    async def nearest_available(
        self, point: GeoPoint, radius_meters: float, limit: int
    ) -> list[CourierCandidate]:
        rows = await self.redis.geo_search(
            self.key,
            longitude=point.longitude,
            latitude=point.latitude,
            radius_meters=radius_meters,
            count=limit,
        )
        candidates = []
        for member, distance in rows:
            try:
                courier_id = uuid.UUID(member)
            except ValueError:
                logger.warning("Ignoring malformed geo index member", member=member)
                continue
            candidates.append(CourierCandidate(courier_id, distance))
        return rank_candidates(candidates, limit)

    async def upsert(self, courier_id: uuid.UUID, latitude: float, longitude: float) -> None:
        await self.redis.geo_add(self.key, str(courier_id), longitude, latitude)

    async def remove(self, courier_id: uuid.UUID) -> None:
        await self.redis.geo_remove(self.key, str(courier_id))


def build_geo_index(
    session: AsyncSession,
    redis_client: Optional[RedisClient] = None,
    settings: Optional[Settings] = None,
) -> GeoIndex:
    """
    Build the configured geo index adapter.

    Falls back to the database adapter when the Redis backend is configured
    but no connected client is available.
    """
    settings = settings or get_settings()
    if settings.geo_index_backend == "redis":
        if redis_client is not None and redis_client.is_connected:
            return RedisGeoIndex(redis_client, settings.redis_geo_key)
        logger.warning("Redis geo index unavailable, using database geo index")
    return DatabaseGeoIndex(session)


async def rebuild_redis_index(session: AsyncSession, index: RedisGeoIndex) -> int:
    """
    Replace the Redis GEO set with the couriers currently available.

    Returns:
        Number of couriers indexed
    """
    couriers = await CourierRepository(session).list_available()
    await index.redis.delete(index.key)
    for courier in couriers:
        await index.upsert(courier.id, courier.latitude, courier.longitude)
    logger.info("Redis geo index rebuilt", key=index.key, couriers=len(couriers))
    return len(couriers)
