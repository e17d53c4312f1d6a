"""
Tests for the inactivity reaper
"""

from datetime import timedelta
import asyncio
import uuid

import pytest

from dinein.core.clock import utcnow
from dinein.core.errors import SessionClosed, SessionNotFound
from dinein.core.results import Result
from dinein.models import CloseReason, Order, OrderStatus, Table, TableSession
from dinein.services.order_orchestrator import CartItem
from dinein.services.reaper import stale_reason


THRESHOLD = timedelta(minutes=30)


def _order(status, minutes_ago):
    at = utcnow() - timedelta(minutes=minutes_ago)
    return Order(
        restaurant_id=uuid.uuid4(),
        order_number="ORD-000001",
        status=status,
        created_at=at,
        updated_at=at,
    )


async def _open_session(services, seed, table):
    result = await services.registry.resolve_or_create_session(seed.restaurant.id, table_id=table.id)
    return result.value.session


async def _place(services, seed, table):
    result = await services.orchestrator.create_order(
        seed.restaurant.id,
        items=[CartItem(product_id=seed.product.id)],
        table_id=table.id,
    )
    return result.value.order


class TestStaleReason:
    """Test the staleness rule"""

    def test_no_orders(self):
        assert stale_reason([], utcnow(), THRESHOLD) == CloseReason.NO_ORDERS

    def test_settled_and_old(self):
        orders = [_order(OrderStatus.PAID, 40), _order(OrderStatus.CANCELLED, 90)]

        assert stale_reason(orders, utcnow(), THRESHOLD) == CloseReason.INACTIVITY

    def test_settled_but_recent(self):
        orders = [_order(OrderStatus.COMPLETED, 10), _order(OrderStatus.PAID, 90)]

        assert stale_reason(orders, utcnow(), THRESHOLD) is None

    @pytest.mark.parametrize("status", [
        OrderStatus.PENDING,
        OrderStatus.ACCEPTED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.DELIVERED,
    ])
    def test_unsettled_never_stale(self, status):
        orders = [_order(OrderStatus.PAID, 120), _order(status, 600)]

        assert stale_reason(orders, utcnow(), THRESHOLD) is None


class TestSweep:
    """Test periodic sweeps"""

    async def test_closes_session_without_orders(self, services, seed, session_factory, channel):
        session = await _open_session(services, seed, seed.table)

        report = await services.reaper.sweep()

        assert report.checked == 1
        assert report.closed == 1
        assert report.closed_session_ids == [session.id]
        async with session_factory() as db:
            stored = await db.get(TableSession, session.id)
            table = await db.get(Table, seed.table.id)
        assert stored.active is False
        assert stored.close_reason == CloseReason.NO_ORDERS
        assert table.available is True
        assert "session:close" in channel.names()

    async def test_grace_period(self, services, seed, session_factory, age_order):
        old = await _place(services, seed, seed.table)
        recent = await _place(services, seed, seed.other_table)
        await age_order(old.id, 40, status=OrderStatus.PAID)
        await age_order(recent.id, 10, status=OrderStatus.PAID)

        report = await services.reaper.sweep()

        assert report.checked == 2
        assert report.closed == 1
        assert report.skipped == 1
        assert report.closed_session_ids == [old.session_id]
        async with session_factory() as db:
            closed = await db.get(TableSession, old.session_id)
            still_open = await db.get(TableSession, recent.session_id)
        assert closed.close_reason == CloseReason.INACTIVITY
        assert still_open.active is True

    async def test_never_closes_orders_in_progress(self, services, seed, session_factory, age_order):
        order = await _place(services, seed, seed.table)
        await age_order(order.id, 240, status=OrderStatus.PREPARING)

        report = await services.reaper.sweep()

        assert report.closed == 0
        assert report.skipped == 1
        async with session_factory() as db:
            session = await db.get(TableSession, order.session_id)
            stored = await db.get(Order, order.id)
        assert session.active is True
        assert stored.status == OrderStatus.PREPARING

    async def test_failure_does_not_abort_sweep(self, services, seed, monkeypatch):
        broken = await _open_session(services, seed, seed.table)
        healthy = await _open_session(services, seed, seed.other_table)
        original = services.registry.close_session

        async def flaky_close(session_id, reason, *args, **kwargs):
            if session_id == broken.id:
                raise RuntimeError("connection reset")
            return await original(session_id, reason, *args, **kwargs)

        monkeypatch.setattr(services.registry, "close_session", flaky_close)

        report = await services.reaper.sweep()

        assert report.checked == 2
        assert report.failed == 1
        assert report.closed == 1
        assert report.closed_session_ids == [healthy.id]

    async def test_concurrent_close_counts_as_skipped(self, services, seed, monkeypatch):
        session = await _open_session(services, seed, seed.table)

        async def already_closed(session_id, reason, *args, **kwargs):
            return Result.failure(SessionClosed(session_id))

        monkeypatch.setattr(services.registry, "close_session", already_closed)

        report = await services.reaper.sweep()

        assert report.skipped == 1
        assert report.failed == 0
        assert report.to_dict()["closed_session_ids"] == []
        assert session.active is True

    async def test_empty_sweep(self, services, seed):
        report = await services.reaper.sweep()

        assert report.to_dict() == {
            "checked": 0,
            "closed": 0,
            "skipped": 0,
            "failed": 0,
            "closed_session_ids": [],
        }


class TestCheckSession:
    """Test on-demand checks of a single session"""

    async def test_closes_finished_session_immediately(self, services, seed, session_factory, age_order):
        order = await _place(services, seed, seed.table)
        await age_order(order.id, 1, status=OrderStatus.COMPLETED)

        result = await services.reaper.check_session(order.session_id)

        assert result.ok
        assert result.value is True
        async with session_factory() as db:
            session = await db.get(TableSession, order.session_id)
        assert session.close_reason == CloseReason.MANUAL_CHECK

    async def test_leaves_session_with_live_orders(self, services, seed):
        order = await _place(services, seed, seed.table)

        result = await services.reaper.check_session(order.session_id)

        assert result.ok
        assert result.value is False

    async def test_inactive_session(self, services, seed):
        session = await _open_session(services, seed, seed.table)
        await services.registry.close_session(session.id, CloseReason.EXPLICIT)

        result = await services.reaper.check_session(session.id)

        assert result.value is False

    async def test_unknown_session(self, services, seed):
        result = await services.reaper.check_session(uuid.uuid4())

        assert isinstance(result.error, SessionNotFound)


class TestLifecycle:
    """Test starting and stopping the background loop"""

    async def test_start_runs_first_sweep_and_stop_cancels(self, services, seed, session_factory):
        session = await _open_session(services, seed, seed.table)
        reaper = services.reaper

        await reaper.start()
        assert reaper.running is True

        closed = False
        for _ in range(100):
            await asyncio.sleep(0.02)
            async with session_factory() as db:
                closed = not (await db.get(TableSession, session.id)).active
            if closed:
                break

        await reaper.stop()

        assert closed is True
        assert reaper.running is False

    async def test_stop_without_start(self, services):
        await services.reaper.stop()

        assert services.reaper.running is False
