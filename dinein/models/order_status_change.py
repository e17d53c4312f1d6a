"""
Order status audit trail
"""

from sqlmodel import Field, SQLModel
from datetime import datetime
from typing import Optional
from enum import Enum
import uuid

from dinein.core.clock import utcnow
from dinein.models.order import OrderStatus


class TransitionKind(str, Enum):
    """How a status change was authorised"""
    STANDARD = "standard"                           # Validated against the state machine
    ADMINISTRATIVE_CLOSE = "administrative_close"   # Session close forcing orders to COMPLETED


class OrderStatusChange(SQLModel, table=True):
    """One recorded status change of an order"""

    __tablename__ = "order_status_changes"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", ondelete="CASCADE", index=True)

    from_status: Optional[OrderStatus] = Field(default=None, description="Null for the initial status")
    to_status: OrderStatus
    transition_kind: TransitionKind = Field(default=TransitionKind.STANDARD)
    actor_role: Optional[str] = Field(default=None, max_length=50)

    created_at: datetime = Field(default_factory=utcnow)
