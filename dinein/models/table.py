"""
Table model for restaurant seating
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import UniqueConstraint
from datetime import datetime
from typing import Optional
import uuid

from dinein.core.clock import utcnow


class Table(SQLModel, table=True):
    """Physical table within a restaurant"""

    __tablename__ = "tables"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "number", name="uq_tables_restaurant_number"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    restaurant_id: uuid.UUID = Field(
        foreign_key="restaurants.id",
        index=True,
        description="Restaurant this table belongs to"
    )

    # Table details
    number: int = Field(description="Table number, unique per restaurant")
    capacity: int = Field(default=4, description="Maximum number of guests")

    # False while an active session references this table
    available: bool = Field(default=True, index=True)

    # QR token embedded in the scan URL
    qr_code: str = Field(max_length=255, unique=True, index=True)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
