"""
Test configuration for pytest
"""

import os

# Test environment variables
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["REAPER_ENABLED"] = "false"
os.environ["DATABASE_CREATE_TABLES"] = "false"
os.environ["LOG_JSON"] = "false"

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional
import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import create_engine

from dinein.core.clock import utcnow
from dinein.core.config import Settings, get_settings
from dinein.core.database import create_session_factory, init_db
from dinein.models import Order, OrderStatus, Product, Restaurant, Table
from dinein.realtime.channel import FanoutChannel
from dinein.services.container import Services, build_services


class RecordingChannel(FanoutChannel):
    """Fan-out channel that remembers every published event"""

    def __init__(self):
        super().__init__(send_timeout=1.0)
        self.events = []

    async def publish(self, event):
        self.events.append(event)
        return await super().publish(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str):
        return [e for e in self.events if e.name == name]


@dataclass
class Seed:
    restaurant: Restaurant
    table: Table
    other_table: Table
    product: Product
    cheap_product: Product
    unavailable_product: Product


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "test.db")


@pytest_asyncio.fixture
async def engine(db_path):
    """File-backed SQLite database per test"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def other_writer(engine, db_path):
    """Synchronous engine on the same database, standing in for another process"""
    writer = create_engine(f"sqlite:///{db_path}")
    yield writer
    writer.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def services(settings, session_factory, channel) -> Services:
    return build_services(settings, session_factory, channel=channel)


@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    """Restaurant with two tables and a small menu"""
    async with session_factory() as db:
        restaurant = Restaurant(name="Test Bistro", slug="test-bistro", tax_rate=Decimal("0.08"))
        db.add(restaurant)
        await db.flush()

        table = Table(restaurant_id=restaurant.id, number=1, capacity=4, qr_code="test-bistro-table-1")
        other_table = Table(restaurant_id=restaurant.id, number=2, capacity=2, qr_code="test-bistro-table-2")
        product = Product(restaurant_id=restaurant.id, name="Burger", price=Decimal("10.00"))
        cheap_product = Product(restaurant_id=restaurant.id, name="Lemonade", price=Decimal("4.50"))
        unavailable_product = Product(
            restaurant_id=restaurant.id, name="Seasonal Soup", price=Decimal("6.00"), available=False
        )
        db.add_all([table, other_table, product, cheap_product, unavailable_product])
        await db.commit()

    return Seed(
        restaurant=restaurant,
        table=table,
        other_table=other_table,
        product=product,
        cheap_product=cheap_product,
        unavailable_product=unavailable_product,
    )


@pytest.fixture
def age_order(session_factory):
    """Move an order's last activity into the past"""

    async def _age(order_id: uuid.UUID, minutes_ago: int, status: Optional[OrderStatus] = None):
        async with session_factory() as db:
            order = await db.get(Order, order_id)
            order.updated_at = utcnow() - timedelta(minutes=minutes_ago)
            order.created_at = order.updated_at
            if status is not None:
                order.status = status
            db.add(order)
            await db.commit()

    return _age
