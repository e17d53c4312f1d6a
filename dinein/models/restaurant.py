"""
Restaurant model
"""

from sqlmodel import Field, SQLModel
from datetime import datetime
from decimal import Decimal
import uuid

from dinein.core.clock import utcnow


class Restaurant(SQLModel, table=True):
    """Restaurant owning tables, products and orders"""

    __tablename__ = "restaurants"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=255)
    slug: str = Field(max_length=100, unique=True, index=True)

    tax_rate: Decimal = Field(
        default=Decimal("0.0000"),
        max_digits=5,
        decimal_places=4,
        description="Tax rate as a fraction (0.08 = 8%)"
    )

    # Incremented atomically for every order placed
    order_sequence: int = Field(default=0, description="Last allocated order sequence")

    created_at: datetime = Field(default_factory=utcnow)
