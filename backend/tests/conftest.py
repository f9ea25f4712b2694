"""
Pytest configuration and shared test fixtures.

Every test gets its own SQLite database file so that separate sessions use
separate connections, the way they would against PostgreSQL. Environment
overrides are applied before the application package is imported.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_DISPATCH_SWEEP_ENABLED", "false")
os.environ.setdefault("APP_GEO_INDEX_BACKEND", "database")
os.environ.setdefault("APP_CELERY_TASK_ALWAYS_EAGER", "true")

from typing import AsyncGenerator, Awaitable, Callable, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from src.core.config import get_settings
from src.database.base import Base
from src.database.connection import create_session_factory, get_db
from src.database.models.courier import Courier
from src.database.models.order import Order
from src.schemas.orders import OrderCreateRequest
from src.services.actors import Actor
from src.services.events.bus import EventBus
from src.services.notifications.relay import NotificationRelay
from src.services.orders.enums import ActorRole, OrderStatus, PaymentMethod
from src.services.orders.service import OrderService

# Delivery point used by most tests (central Bengaluru)
DELIVERY_LATITUDE = 12.9716
DELIVERY_LONGITUDE = 77.5946

# One degree of latitude in meters on the haversine sphere
METERS_PER_DEGREE = 111_194.93


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    return create_session_factory(engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def bus() -> AsyncGenerator[EventBus, None]:
    bus = EventBus(queue_size=50)
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def relay(bus: EventBus) -> NotificationRelay:
    return NotificationRelay(bus, senders=(), settings=get_settings())


@pytest.fixture
def customer() -> Actor:
    return Actor(id="customer-1", role=ActorRole.CUSTOMER)


@pytest.fixture
def other_customer() -> Actor:
    return Actor(id="customer-2", role=ActorRole.CUSTOMER)


@pytest.fixture
def operator() -> Actor:
    return Actor(id="operator-1", role=ActorRole.OPERATOR)


def courier_actor(courier: Courier) -> Actor:
    return Actor(id=str(courier.id), role=ActorRole.COURIER)


@pytest.fixture
def as_courier() -> Callable[[Courier], Actor]:
    return courier_actor


@pytest.fixture
def order_payload() -> Callable[..., dict]:
    """Factory for order placement request bodies."""

    def build(
        payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        unit_price: str = "200.00",
        quantity: int = 2,
        latitude: float = DELIVERY_LATITUDE,
        longitude: float = DELIVERY_LONGITUDE,
        push_endpoint: Optional[str] = None,
    ) -> dict:
        return {
            "customer": {
                "name": "Asha Rao",
                "phone": "+919800000001",
                "email": "asha@example.com",
                "push_endpoint": push_endpoint,
            },
            "items": [
                {
                    "menu_item_id": "masala-dosa",
                    "name": "Masala Dosa",
                    "unit_price": unit_price,
                    "quantity": quantity,
                    "customizations": [
                        {"name": "Extra chutney", "additional_price": "10.00"}
                    ],
                }
            ],
            "delivery_address": {
                "street": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "zip_code": "560001",
                "latitude": latitude,
                "longitude": longitude,
            },
            "payment_method": payment_method.value,
        }

    return build


@pytest.fixture
def make_courier(session_factory) -> Callable[..., Awaitable[Courier]]:
    """Factory inserting a courier, by default available at the delivery point."""
    counter = {"n": 0}

    async def create(
        name: Optional[str] = None,
        distance_meters: float = 0.0,
        available: bool = True,
        is_active: bool = True,
        push_endpoint: Optional[str] = None,
    ) -> Courier:
        counter["n"] += 1
        courier = Courier(
            name=name or f"Courier {counter['n']}",
            phone=f"+91990000{counter['n']:04d}",
            vehicle_type="bike",
            vehicle_number=f"KA01AB{counter['n']:04d}",
            push_endpoint=push_endpoint,
            is_active=is_active,
            available=available,
            latitude=DELIVERY_LATITUDE + distance_meters / METERS_PER_DEGREE,
            longitude=DELIVERY_LONGITUDE,
        )
        async with session_factory() as session:
            session.add(courier)
            await session.commit()
        return courier

    return create


@pytest.fixture
def place_order(
    session_factory, relay: NotificationRelay, customer: Actor, order_payload
) -> Callable[..., Awaitable[Order]]:
    """Factory placing an order and optionally moving it to READY."""

    async def create(
        status: OrderStatus = OrderStatus.PENDING,
        actor: Optional[Actor] = None,
        **payload_kwargs,
    ) -> Order:
        request = OrderCreateRequest.model_validate(order_payload(**payload_kwargs))
        async with session_factory() as session:
            service = OrderService(session, relay=relay)
            order = await service.place_order(actor or customer, request)
            if status == OrderStatus.READY:
                order = await service.transition(
                    order.id,
                    OrderStatus.READY,
                    Actor(id="operator-1", role=ActorRole.OPERATOR),
                )
        return order

    return create


@pytest.fixture
async def api_client(
    session_factory, bus: EventBus, relay: NotificationRelay
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the application wired to the test database."""
    from src.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.bus = bus
    app.state.relay = relay
    app.state.redis_client = None
    app.state.sweeper = None
    app.state.session_factory = session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


def actor_headers(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


@pytest.fixture
def headers() -> Callable[[str, str], dict[str, str]]:
    return actor_headers

