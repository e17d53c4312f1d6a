"""
Order model
Customer order with money snapshots and lifecycle status
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import UniqueConstraint
from datetime import datetime
from typing import Optional
from decimal import Decimal
from enum import Enum
import uuid

from dinein.core.clock import utcnow


class OrderStatus(str, Enum):
    """Status of an order"""
    PENDING = "pending"             # Placed, waiting for the kitchen
    ACCEPTED = "accepted"           # Kitchen acknowledged
    PREPARING = "preparing"         # Kitchen is preparing
    READY = "ready"                 # Ready to be served
    DELIVERED = "delivered"         # Served to the table
    COMPLETED = "completed"         # Service finished, awaiting payment
    PAID = "paid"                   # Paid (terminal)
    CANCELLED = "cancelled"         # Cancelled (terminal)


class OrderType(str, Enum):
    """Where the order is consumed"""
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"


class Order(SQLModel, table=True):
    """Customer order"""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "order_number", name="uq_orders_restaurant_number"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    restaurant_id: uuid.UUID = Field(foreign_key="restaurants.id", index=True)
    order_number: str = Field(max_length=32, description="Human-readable number, monotonic per restaurant")

    # Linkage (null for takeaway)
    table_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="tables.id",
        ondelete="SET NULL",
        index=True,
        nullable=True
    )
    session_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="table_sessions.id",
        ondelete="SET NULL",
        index=True,
        nullable=True
    )

    customer_name: str = Field(default="Guest", max_length=100)
    order_type: OrderType = Field(default=OrderType.DINE_IN)
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    version: int = Field(
        default=0,
        description="Optimistic concurrency version, bumped on every status change"
    )
    notes: Optional[str] = Field(default=None, max_length=1000)

    # Financial amounts (snapshots taken at creation)
    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    tax: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    tip: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    total: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def last_activity_at(self) -> datetime:
        """Last time the order changed"""
        return self.updated_at or self.created_at
