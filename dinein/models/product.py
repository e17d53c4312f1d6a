"""
Product model (menu entry referenced by order items)
"""

from sqlmodel import Field, SQLModel
from datetime import datetime
from decimal import Decimal
import uuid

from dinein.core.clock import utcnow


class Product(SQLModel, table=True):
    """Menu product with its current price"""

    __tablename__ = "products"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    restaurant_id: uuid.UUID = Field(foreign_key="restaurants.id", index=True)

    name: str = Field(max_length=255)
    price: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    available: bool = Field(default=True)

    created_at: datetime = Field(default_factory=utcnow)
