"""
Tests for order placement and status changes
"""

from decimal import Decimal
from unittest.mock import AsyncMock
import uuid

import pytest
from sqlmodel import Session, select

from dinein.core.clock import utcnow
from dinein.core.errors import (
    CartEmpty,
    ErrorKind,
    InvalidAmount,
    InvalidTransition,
    MissingSessionBinding,
    OrderModified,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    SessionClosed,
    SessionNotFound,
)
from dinein.models import (
    CloseReason,
    Order,
    OrderStatus,
    OrderStatusChange,
    OrderType,
    Product,
    Table,
    TableSession,
    TransitionKind,
)
from dinein.services.order_orchestrator import CartItem, OrderOrchestrator, compute_totals, to_money


class TestComputeTotals:
    """Test money arithmetic"""

    def test_tax_and_total(self):
        totals = compute_totals([(Decimal("10.00"), 2)], Decimal("0.08"))

        assert totals.subtotal == Decimal("20.00")
        assert totals.tax == Decimal("1.60")
        assert totals.total == Decimal("21.60")

    def test_tip_and_discount(self):
        totals = compute_totals(
            [(Decimal("10.00"), 1), (Decimal("4.50"), 2)],
            Decimal("0.10"),
            tip=Decimal("2.00"),
            discount=Decimal("1.00"),
        )

        assert totals.subtotal == Decimal("19.00")
        assert totals.tax == Decimal("1.90")
        assert totals.total == Decimal("21.90")

    def test_rounds_half_up(self):
        totals = compute_totals([(Decimal("0.25"), 1)], Decimal("0.10"))

        assert totals.tax == Decimal("0.03")
        assert to_money("2.345") == Decimal("2.35")

    def test_discount_above_subtotal(self):
        with pytest.raises(InvalidAmount):
            compute_totals([(Decimal("5.00"), 1)], Decimal("0"), discount=Decimal("5.01"))

    def test_negative_tip(self):
        with pytest.raises(InvalidAmount):
            compute_totals([(Decimal("5.00"), 1)], Decimal("0"), tip=Decimal("-1"))


class TestCreateOrder:
    """Test order placement"""

    async def test_creates_order_with_new_session(self, services, seed, channel):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id, quantity=2, notes="no onions")],
            table_id=seed.table.id,
            customer_name="Ana",
        )

        assert result.ok
        detail = result.value
        assert detail.order.order_number == "ORD-000001"
        assert detail.order.status == OrderStatus.PENDING
        assert detail.order.subtotal == Decimal("20.00")
        assert detail.order.tax == Decimal("1.60")
        assert detail.order.total == Decimal("21.60")
        assert detail.order.customer_name == "Ana"
        assert detail.session_created is True
        assert detail.table_number == 1
        assert detail.items[0].name == "Burger"
        assert detail.items[0].notes == "no onions"

        assert channel.names() == ["session:new", "table:update", "order:new"]
        payload = channel.of("order:new")[0].payload()
        assert payload["order_number"] == "ORD-000001"
        assert payload["table_number"] == 1
        assert payload["total"] == "21.60"
        assert payload["items"][0]["quantity"] == 2

    async def test_order_numbers_are_sequential(self, services, seed):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        second = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.cheap_product.id)],
            session_code=first.value.session_code,
        )

        assert first.value.order.order_number == "ORD-000001"
        assert second.value.order.order_number == "ORD-000002"
        assert second.value.session_created is False
        assert second.value.order.session_id == first.value.order.session_id

    async def test_writes_initial_audit_row(self, services, seed, session_factory):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )

        async with session_factory() as db:
            audit = (await db.exec(
                select(OrderStatusChange).where(OrderStatusChange.order_id == result.value.order.id)
            )).all()
        assert len(audit) == 1
        assert audit[0].from_status is None
        assert audit[0].to_status == OrderStatus.PENDING
        assert audit[0].transition_kind == TransitionKind.STANDARD

    async def test_empty_cart_creates_nothing(self, services, seed, session_factory, channel):
        result = await services.orchestrator.create_order(
            seed.restaurant.id, items=[], table_id=seed.table.id
        )

        assert isinstance(result.error, CartEmpty)
        async with session_factory() as db:
            assert (await db.exec(select(Order))).all() == []
            assert (await db.exec(select(TableSession))).all() == []
        assert channel.events == []

    @pytest.mark.parametrize("quantity", [0, -1, 51])
    async def test_quantity_bounds(self, services, seed, quantity):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id, quantity=quantity)],
            table_id=seed.table.id,
        )

        assert isinstance(result.error, InvalidAmount)

    async def test_too_many_items(self, services, seed):
        items = [CartItem(product_id=seed.product.id) for _ in range(21)]

        result = await services.orchestrator.create_order(
            seed.restaurant.id, items=items, table_id=seed.table.id
        )

        assert isinstance(result.error, InvalidAmount)

    async def test_unknown_product_creates_no_session(self, services, seed, session_factory):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=uuid.uuid4())],
            table_id=seed.table.id,
        )

        assert isinstance(result.error, ProductNotFound)
        async with session_factory() as db:
            assert (await db.exec(select(TableSession))).all() == []

    async def test_unavailable_product(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.unavailable_product.id)],
            table_id=seed.table.id,
        )

        assert isinstance(result.error, ProductUnavailable)

    async def test_discount_above_subtotal(self, services, seed, session_factory, channel):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.cheap_product.id)],
            table_id=seed.table.id,
            discount="5.00",
        )

        assert isinstance(result.error, InvalidAmount)
        async with session_factory() as db:
            assert (await db.exec(select(Order))).all() == []
            sessions = (await db.exec(select(TableSession))).all()
            table = await db.get(Table, seed.table.id)

        # The session opened for this order is released again
        assert len(sessions) == 1
        assert sessions[0].active is False
        assert sessions[0].close_reason == CloseReason.NO_ORDERS
        assert table.available is True
        assert "order:new" not in channel.names()
        assert channel.names()[-2:] == ["session:close", "table:update"]

    async def test_failed_order_keeps_existing_session(self, services, seed, session_factory):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )

        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.cheap_product.id)],
            session_code=first.value.session_code,
            discount="5.00",
        )

        assert isinstance(result.error, InvalidAmount)
        async with session_factory() as db:
            session = await db.get(TableSession, first.value.order.session_id)
        assert session.active is True

    async def test_session_closed_while_placing(self, services, seed, session_factory, other_writer, monkeypatch):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        session_id = first.value.order.session_id
        orchestrator = services.orchestrator
        original = orchestrator._load_products
        loads = []

        async def load_then_close(db, restaurant_id, items):
            products = await original(db, restaurant_id, items)
            loads.append(items)
            # Second load runs inside the placing transaction
            if len(loads) == 2:
                with Session(other_writer) as other:
                    row = other.get(TableSession, session_id)
                    row.active = False
                    row.closed_at = utcnow()
                    row.close_reason = CloseReason.EXPLICIT
                    other.add(row)
                    other.commit()
            return products

        monkeypatch.setattr(orchestrator, "_load_products", load_then_close)
        result = await orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            session_code=first.value.session_code,
        )

        assert len(loads) == 2
        assert isinstance(result.error, SessionClosed)
        async with session_factory() as db:
            orders = (await db.exec(select(Order))).all()
            session = await db.get(TableSession, session_id)
        assert [o.id for o in orders] == [first.value.order.id]
        assert session.active is False

    async def test_timestamps_stored_as_naive_utc(self, services, seed, session_factory):
        before = utcnow()
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )

        async with session_factory() as db:
            order = await db.get(Order, result.value.order.id)
            session = await db.get(TableSession, order.session_id)
        assert order.created_at.tzinfo is None
        assert session.created_at.tzinfo is None
        assert order.created_at >= before

    async def test_negative_tip(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
            tip="-0.50",
        )

        assert isinstance(result.error, InvalidAmount)

    async def test_tip_added_to_total(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
            tip="1.50",
            discount="0.50",
        )

        assert result.value.order.tip == Decimal("1.50")
        assert result.value.order.discount == Decimal("0.50")
        assert result.value.order.total == Decimal("11.80")

    async def test_dine_in_requires_binding(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id, items=[CartItem(product_id=seed.product.id)]
        )

        assert isinstance(result.error, MissingSessionBinding)

    async def test_unknown_session_code(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            session_code="MISSING0",
        )

        assert isinstance(result.error, SessionNotFound)

    async def test_closed_session_rejected(self, services, seed):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        await services.registry.close_session(first.value.order.session_id, CloseReason.EXPLICIT)

        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            session_code=first.value.session_code,
        )

        assert isinstance(result.error, SessionClosed)

    async def test_takeaway_without_session(self, services, seed, session_factory):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.cheap_product.id, quantity=2)],
            order_type=OrderType.TAKEAWAY,
        )

        assert result.ok
        assert result.value.order.session_id is None
        assert result.value.order.table_id is None
        assert result.value.order.customer_name == "Guest"
        assert result.value.to_dict()["order_type"] == "takeaway"
        async with session_factory() as db:
            assert (await db.exec(select(TableSession))).all() == []

    async def test_price_snapshot_survives_menu_change(self, services, seed, session_factory):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )

        async with session_factory() as db:
            product = await db.get(Product, seed.product.id)
            product.price = Decimal("99.00")
            product.name = "Deluxe Burger"
            db.add(product)
            await db.commit()

        fetched = await services.orchestrator.get_order(result.value.order.id)

        assert fetched.value.items[0].unit_price == Decimal("10.00")
        assert fetched.value.items[0].name == "Burger"
        assert fetched.value.order.total == Decimal("10.80")


class TestUpdateOrderStatus:
    """Test status changes"""

    async def _order(self, services, seed):
        result = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        return result.value

    async def test_valid_transition(self, services, seed, session_factory, channel):
        detail = await self._order(services, seed)
        channel.events.clear()

        result = await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.ACCEPTED, actor_role="kitchen"
        )

        assert result.ok
        assert result.value.order.status == OrderStatus.ACCEPTED
        assert result.value.table_number == 1
        assert channel.names() == ["order:update", "order:statusChange"]
        change = channel.of("order:statusChange")[0].payload()
        assert change["order_id"] == str(detail.order.id)
        assert change["status"] == "accepted"
        assert change["previous_status"] == "pending"

        async with session_factory() as db:
            audit = (await db.exec(
                select(OrderStatusChange).where(OrderStatusChange.to_status == OrderStatus.ACCEPTED)
            )).all()
        assert audit[0].actor_role == "kitchen"

    async def test_invalid_transition_names_allowed(self, services, seed, session_factory, channel):
        detail = await self._order(services, seed)
        channel.events.clear()

        result = await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.READY
        )

        assert isinstance(result.error, InvalidTransition)
        assert result.error.allowed == {OrderStatus.ACCEPTED, OrderStatus.CANCELLED}
        assert channel.events == []
        async with session_factory() as db:
            order = await db.get(Order, detail.order.id)
        assert order.status == OrderStatus.PENDING

    async def test_status_change_reaches_every_room(self, services, seed, channel):
        detail = await self._order(services, seed)
        sockets = {}
        for role in ("kitchen", "service", "admin"):
            sockets[role] = AsyncMock()
            await channel.connect(sockets[role], role, seed.restaurant.id)

        await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.ACCEPTED
        )

        for socket in sockets.values():
            sent = [call.args[0] for call in socket.send_text.call_args_list]
            assert any('"order:statusChange"' in message for message in sent)
            assert any(str(detail.order.id) in message for message in sent)

    async def test_completed_sets_completed_at(self, services, seed):
        detail = await self._order(services, seed)
        for status in (
            OrderStatus.ACCEPTED,
            OrderStatus.PREPARING,
            OrderStatus.READY,
            OrderStatus.DELIVERED,
            OrderStatus.COMPLETED,
        ):
            result = await services.orchestrator.update_order_status(seed.restaurant.id, detail.order.id, status)
            assert result.ok, status

        assert result.value.order.completed_at is not None
        assert result.value.to_dict()["progress"] == 83

    async def test_version_bumped_on_change(self, services, seed):
        detail = await self._order(services, seed)
        assert detail.order.version == 0

        accepted = await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.ACCEPTED, expected_version=0
        )

        assert accepted.value.order.version == 1
        assert accepted.value.to_dict()["version"] == 1

    async def test_stale_expected_version(self, services, seed, session_factory, channel):
        detail = await self._order(services, seed)
        await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.ACCEPTED
        )
        channel.events.clear()

        result = await services.orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.CANCELLED, expected_version=0
        )

        assert isinstance(result.error, OrderModified)
        assert result.error.kind == ErrorKind.CONFLICT
        assert channel.events == []
        async with session_factory() as db:
            order = await db.get(Order, detail.order.id)
        assert order.status == OrderStatus.ACCEPTED
        assert order.version == 1

    async def test_concurrent_cancel_is_not_overwritten(
        self, services, seed, settings, session_factory, channel, other_writer
    ):
        detail = await self._order(services, seed)
        channel.events.clear()
        ticks = []

        def clock():
            # Another writer cancels between the read and the write
            if not ticks:
                with Session(other_writer) as other:
                    row = other.get(Order, detail.order.id)
                    row.status = OrderStatus.CANCELLED
                    row.version += 1
                    other.add(row)
                    other.commit()
            ticks.append(1)
            return utcnow()

        orchestrator = OrderOrchestrator(
            session_factory, services.registry, channel, settings=settings, clock=clock
        )

        result = await orchestrator.update_order_status(
            seed.restaurant.id, detail.order.id, OrderStatus.ACCEPTED
        )

        assert ticks
        assert isinstance(result.error, OrderModified)
        assert channel.events == []
        async with session_factory() as db:
            order = await db.get(Order, detail.order.id)
            accepted = (await db.exec(
                select(OrderStatusChange).where(OrderStatusChange.to_status == OrderStatus.ACCEPTED)
            )).all()
        assert order.status == OrderStatus.CANCELLED
        assert order.version == 1
        assert accepted == []

    async def test_unknown_order(self, services, seed):
        result = await services.orchestrator.update_order_status(
            seed.restaurant.id, uuid.uuid4(), OrderStatus.ACCEPTED
        )

        assert isinstance(result.error, OrderNotFound)

    async def test_other_restaurant_cannot_update(self, services, seed):
        detail = await self._order(services, seed)

        result = await services.orchestrator.update_order_status(
            uuid.uuid4(), detail.order.id, OrderStatus.ACCEPTED
        )

        assert isinstance(result.error, OrderNotFound)


class TestListOrders:
    """Test order queries"""

    async def test_newest_first_by_session(self, services, seed):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        second = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            session_code=first.value.session_code,
        )
        await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.other_table.id,
        )

        result = await services.orchestrator.list_orders(session_code=first.value.session_code)

        assert result.ok
        assert [d.order.id for d in result.value] == [second.value.order.id, first.value.order.id]
        assert all(d.session_code == first.value.session_code for d in result.value)

    async def test_active_only_and_status_filter(self, services, seed):
        first = await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            table_id=seed.table.id,
        )
        await services.orchestrator.create_order(
            seed.restaurant.id,
            items=[CartItem(product_id=seed.product.id)],
            session_code=first.value.session_code,
        )
        await services.orchestrator.update_order_status(
            seed.restaurant.id, first.value.order.id, OrderStatus.CANCELLED
        )

        active = await services.orchestrator.list_orders(seed.restaurant.id, active_only=True)
        cancelled = await services.orchestrator.list_orders(seed.restaurant.id, status=OrderStatus.CANCELLED)

        assert [d.order.order_number for d in active.value] == ["ORD-000002"]
        assert [d.order.order_number for d in cancelled.value] == ["ORD-000001"]

    async def test_unknown_session_code(self, services, seed):
        result = await services.orchestrator.list_orders(session_code="MISSING0")

        assert isinstance(result.error, SessionNotFound)

    async def test_requires_scope(self, services, seed):
        result = await services.orchestrator.list_orders()

        assert isinstance(result.error, MissingSessionBinding)
