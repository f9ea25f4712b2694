"""
Tests for CashSettlementLedger.

Covers session lifecycle, COD collection totals, settlement discrepancy
and the frozen state of a settled session.
"""

import uuid
from decimal import Decimal

import pytest

from src.database.models.courier import Courier
from src.services.actors import Actor
from src.services.couriers.repository import CourierRepository
from src.services.errors import (
    AlreadySettledError,
    ErrorKind,
    NoActiveSessionError,
    NotFoundError,
    SessionAlreadyOpenError,
    SessionNotEndedError,
)
from src.services.events.bus import role_topic, user_topic
from src.services.orders.enums import ActorRole, OrderStatus
from src.services.orders.service import OrderService
from src.services.settlement.service import CashSettlementLedger


@pytest.fixture
def deliver_cod_order(session_factory, place_order, as_courier):
    """Deliver a fresh COD order through ``courier`` collecting ``amount``."""

    async def deliver(courier: Courier, amount: str):
        order = await place_order(status=OrderStatus.READY)
        async with session_factory() as session:
            service = OrderService(session)
            await service.start_delivery(
                await service.get_order(order.id), courier, Actor.system()
            )
        async with session_factory() as session:
            return await OrderService(session).transition(
                order.id,
                OrderStatus.DELIVERED,
                as_courier(courier),
                collected_amount=Decimal(amount),
            )

    return deliver


async def start_session(session_factory, courier_id, opening_float="0"):
    async with session_factory() as session:
        return await CashSettlementLedger(session).start_session(
            courier_id, Decimal(opening_float)
        )


async def end_session(session_factory, courier_id):
    async with session_factory() as session:
        return await CashSettlementLedger(session).end_session(courier_id)


# ============================================================================
# Session Lifecycle Tests
# ============================================================================


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_start_session_opens_and_makes_courier_available(
        self, session_factory, make_courier
    ) -> None:
        courier = await make_courier(available=False)

        delivery_session = await start_session(session_factory, courier.id, "150")

        assert delivery_session.is_open
        assert delivery_session.courier_name == courier.name
        assert delivery_session.opening_float == Decimal("150.00")
        assert delivery_session.total_collected == Decimal("0.00")
        assert delivery_session.total_to_deposit == Decimal("-150.00")
        assert delivery_session.collections == []

        async with session_factory() as session:
            reloaded = await CourierRepository(session).get(courier.id)
        assert reloaded.available is True

    @pytest.mark.asyncio
    async def test_second_open_session_rejected(
        self, session_factory, make_courier
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id)

        with pytest.raises(SessionAlreadyOpenError) as exc_info:
            await start_session(session_factory, courier.id)

        assert exc_info.value.kind == ErrorKind.SESSION_ALREADY_OPEN

    @pytest.mark.asyncio
    async def test_start_session_for_unknown_courier(self, session_factory) -> None:
        with pytest.raises(NotFoundError):
            await start_session(session_factory, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_end_session_makes_courier_unavailable(
        self, session_factory, make_courier
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id)

        ended = await end_session(session_factory, courier.id)

        assert ended.end_time is not None
        assert not ended.is_open
        async with session_factory() as session:
            assert (await CourierRepository(session).get(courier.id)).available is False
            assert await CashSettlementLedger(session).get_active_session(courier.id) is None

    @pytest.mark.asyncio
    async def test_end_without_open_session(self, session_factory, make_courier) -> None:
        courier = await make_courier(available=False)

        with pytest.raises(NoActiveSessionError) as exc_info:
            await end_session(session_factory, courier.id)

        assert exc_info.value.kind == ErrorKind.NO_ACTIVE_SESSION

    @pytest.mark.asyncio
    async def test_new_session_after_previous_ended(
        self, session_factory, make_courier
    ) -> None:
        courier = await make_courier(available=False)
        first = await start_session(session_factory, courier.id)
        await end_session(session_factory, courier.id)

        second = await start_session(session_factory, courier.id)

        assert second.id != first.id
        assert second.is_open

    @pytest.mark.asyncio
    async def test_session_events_published(
        self, session_factory, bus, relay, make_courier
    ) -> None:
        courier = await make_courier(available=False)
        courier_sub = bus.subscribe(user_topic(courier.id))
        operator_sub = bus.subscribe(role_topic(ActorRole.OPERATOR))

        async with session_factory() as session:
            await CashSettlementLedger(session, relay=relay).start_session(
                courier.id, Decimal("50")
            )

        courier_event = await courier_sub.get()
        operator_event = await operator_sub.get()
        assert courier_event.type == "session_started"
        assert operator_event.type == "session_started"
        assert courier_event.payload["opening_float"] == "50.00"


# ============================================================================
# Collection Tests
# ============================================================================


class TestCollections:
    @pytest.mark.asyncio
    async def test_collection_totals(
        self, session_factory, make_courier, deliver_cod_order
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id, "100")

        await deliver_cod_order(courier, "500")

        async with session_factory() as session:
            active = await CashSettlementLedger(session).get_active_session(courier.id)
        assert active.total_collected == Decimal("500.00")
        assert active.total_to_deposit == Decimal("400.00")

    @pytest.mark.asyncio
    async def test_multiple_collections_accumulate(
        self, session_factory, make_courier, deliver_cod_order
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id, "100")

        await deliver_cod_order(courier, "472.50")
        await deliver_cod_order(courier, "500")

        async with session_factory() as session:
            active = await CashSettlementLedger(session).get_active_session(courier.id)
        assert len(active.collections) == 2
        assert active.total_collected == Decimal("972.50")
        assert active.total_to_deposit == Decimal("872.50")
        assert [c["amount"] for c in active.collections] == ["472.50", "500.00"]


# ============================================================================
# Settlement Tests
# ============================================================================


class TestSettlement:
    @pytest.mark.asyncio
    async def test_settle_records_discrepancy(
        self, session_factory, make_courier, deliver_cod_order, operator
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id, "100")
        order = await deliver_cod_order(courier, "500")
        ended = await end_session(session_factory, courier.id)

        async with session_factory() as session:
            settled = await CashSettlementLedger(session).settle_session(
                ended.id,
                Decimal("390"),
                operator,
                discrepancy_reason="Short change",
                notes="Counted twice",
            )

        assert settled.is_settled
        assert settled.deposited_amount == Decimal("390.00")
        assert settled.discrepancy == Decimal("10.00")
        assert settled.discrepancy_reason == "Short change"
        assert settled.settled_by == operator.id
        assert settled.settled_at is not None

        async with session_factory() as session:
            reloaded = await OrderService(session).get_order(order.id)
        assert reloaded.cash_is_settled is True

    @pytest.mark.asyncio
    async def test_exact_deposit_has_zero_discrepancy(
        self, session_factory, make_courier, deliver_cod_order, operator
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id, "100")
        await deliver_cod_order(courier, "500")
        ended = await end_session(session_factory, courier.id)

        async with session_factory() as session:
            settled = await CashSettlementLedger(session).settle_session(
                ended.id, Decimal("400"), operator
            )

        assert settled.discrepancy == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_settling_twice_is_rejected(
        self, session_factory, make_courier, operator
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id)
        ended = await end_session(session_factory, courier.id)
        async with session_factory() as session:
            await CashSettlementLedger(session).settle_session(
                ended.id, Decimal("0"), operator
            )

        async with session_factory() as session:
            with pytest.raises(AlreadySettledError) as exc_info:
                await CashSettlementLedger(session).settle_session(
                    ended.id, Decimal("999"), operator
                )
        assert exc_info.value.kind == ErrorKind.ALREADY_SETTLED

        async with session_factory() as session:
            reloaded = await CashSettlementLedger(session).repository.get(ended.id)
        assert reloaded.deposited_amount == Decimal("0.00")
        assert reloaded.discrepancy == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_open_session_cannot_be_settled(
        self, session_factory, make_courier, operator
    ) -> None:
        courier = await make_courier(available=False)
        opened = await start_session(session_factory, courier.id)

        async with session_factory() as session:
            with pytest.raises(SessionNotEndedError) as exc_info:
                await CashSettlementLedger(session).settle_session(
                    opened.id, Decimal("0"), operator
                )

        assert exc_info.value.kind == ErrorKind.SESSION_NOT_ENDED

    @pytest.mark.asyncio
    async def test_unknown_session(self, db_session, operator) -> None:
        with pytest.raises(NotFoundError):
            await CashSettlementLedger(db_session).settle_session(
                uuid.uuid4(), Decimal("0"), operator
            )

    @pytest.mark.asyncio
    async def test_settled_session_is_frozen(
        self, session_factory, make_courier, operator
    ) -> None:
        courier = await make_courier(available=False)
        await start_session(session_factory, courier.id)
        ended = await end_session(session_factory, courier.id)

        async with session_factory() as session:
            settled = await CashSettlementLedger(session).settle_session(
                ended.id, Decimal("0"), operator
            )

        with pytest.raises(ValueError, match="is settled"):
            settled.total_collected = Decimal("1")


# ============================================================================
# Listing Tests
# ============================================================================


class TestListing:
    @pytest.mark.asyncio
    async def test_active_and_unsettled_lists(
        self, session_factory, make_courier
    ) -> None:
        busy = await make_courier(available=False)
        done = await make_courier(available=False)
        await start_session(session_factory, busy.id)
        await start_session(session_factory, done.id)
        ended = await end_session(session_factory, done.id)

        async with session_factory() as session:
            ledger = CashSettlementLedger(session)
            active = await ledger.list_active_sessions()
            unsettled = await ledger.list_unsettled_sessions()
            for_done = await ledger.list_sessions(courier_id=done.id)

        assert [s.courier_id for s in active] == [busy.id]
        assert [s.id for s in unsettled] == [ended.id]
        assert [s.id for s in for_done] == [ended.id]

    @pytest.mark.asyncio
    async def test_delivery_overview(
        self, session_factory, make_courier, place_order
    ) -> None:
        courier = await make_courier(available=False)
        await make_courier(available=False, is_active=False)
        await start_session(session_factory, courier.id)
        await place_order(status=OrderStatus.READY)

        async with session_factory() as session:
            overview = await CashSettlementLedger(session).delivery_overview()

        assert overview["couriers"] == {"total": 2, "active": 1, "available": 1}
        assert overview["sessions"]["active"] == 1
        assert overview["orders_awaiting_courier"] == 1
        assert overview["orders_out_for_delivery"] == 0
