"""
Order item model
Product line in an order with a unit price snapshot
"""

from sqlmodel import Field, SQLModel
from decimal import Decimal
from typing import Optional
import uuid


class OrderItem(SQLModel, table=True):
    """Line item owned by exactly one order"""

    __tablename__ = "order_items"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", ondelete="CASCADE", index=True)
    product_id: uuid.UUID = Field(foreign_key="products.id", index=True)

    # Snapshot of the product name at order time
    name: str = Field(max_length=255)
    quantity: int = Field(default=1)
    unit_price: Decimal = Field(
        default=Decimal("0.00"),
        max_digits=10,
        decimal_places=2,
        description="Unit price at time of order (snapshot)"
    )
    notes: Optional[str] = Field(default=None, max_length=500)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity
