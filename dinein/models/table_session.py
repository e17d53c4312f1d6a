"""
Table session model for tracking dining occupancy
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Index, text
from datetime import datetime
from typing import Optional
from enum import Enum
import uuid

from dinein.core.clock import utcnow


class CloseReason(str, Enum):
    """Why a table session was closed"""
    EXPLICIT = "explicit"           # Staff closed the session (bill settled)
    LIFTED = "lifted"               # Table lifted for manual recovery
    NO_ORDERS = "no_orders"         # Reaper: scanned but never ordered
    INACTIVITY = "inactivity"       # Reaper: all orders settled past the grace period
    MANUAL_CHECK = "manual_check"   # Single-session check found nothing in progress

    @property
    def is_auto_expiry(self) -> bool:
        return self in (CloseReason.NO_ORDERS, CloseReason.INACTIVITY, CloseReason.MANUAL_CHECK)


class TableSession(SQLModel, table=True):
    """One dining occupancy of a table"""

    __tablename__ = "table_sessions"
    __table_args__ = (
        # At most one active session per table
        Index(
            "uq_table_sessions_active_table",
            "table_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    restaurant_id: uuid.UUID = Field(
        foreign_key="restaurants.id",
        index=True,
        description="Restaurant ID for scoping"
    )
    table_id: uuid.UUID = Field(
        foreign_key="tables.id",
        ondelete="CASCADE",
        index=True,
        description="Table being used for this session"
    )

    # Client-visible token used to scope customer reads
    session_code: str = Field(max_length=32, unique=True, index=True)
    active: bool = Field(default=True, index=True)
    customer_name: Optional[str] = Field(default=None, max_length=100)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default=None, description="Last time an order was placed in this session")
    closed_at: Optional[datetime] = Field(default=None)
    close_reason: Optional[CloseReason] = Field(default=None)
