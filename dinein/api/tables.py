"""
Tables API endpoints
"""

from fastapi import APIRouter, Depends, status
from sqlmodel import Field, SQLModel
from typing import List, Optional
from datetime import datetime
import structlog
import uuid

from dinein.api.errors import unwrap_or_raise
from dinein.core.dependencies import get_restaurant_id, get_services, require_role
from dinein.models import Table
from dinein.services.container import Services

logger = structlog.get_logger(__name__)
router = APIRouter()


# Pydantic schemas
class TableCreate(SQLModel):
    """Schema for creating a table"""
    number: int = Field(ge=1)
    capacity: int = Field(default=4, ge=1, le=50)


class TableResponse(SQLModel):
    """Schema for table response"""
    id: uuid.UUID
    restaurant_id: uuid.UUID
    number: int
    capacity: int
    available: bool
    qr_code: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    active_session_id: Optional[uuid.UUID] = None
    active_session_code: Optional[str] = None


class TableLiftResponse(SQLModel):
    table: TableResponse
    closed_session_ids: List[uuid.UUID]


def _table_response(table: Table, active_session=None) -> TableResponse:
    return TableResponse(
        id=table.id,
        restaurant_id=table.restaurant_id,
        number=table.number,
        capacity=table.capacity,
        available=table.available,
        qr_code=table.qr_code,
        created_at=table.created_at,
        updated_at=table.updated_at,
        active_session_id=active_session.id if active_session else None,
        active_session_code=active_session.session_code if active_session else None,
    )


@router.get("", response_model=List[TableResponse])
async def list_tables(
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    services: Services = Depends(get_services)
):
    """List tables with their active session"""
    views = unwrap_or_raise(await services.registry.list_tables(restaurant_id))
    return [_table_response(v.table, v.active_session) for v in views]


@router.post("", response_model=TableResponse, status_code=status.HTTP_201_CREATED)
async def create_table(
    table_data: TableCreate,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    role: str = Depends(require_role("admin")),
    services: Services = Depends(get_services)
):
    """Create a new table with its QR code"""
    table = unwrap_or_raise(await services.registry.create_table(
        restaurant_id, table_data.number, table_data.capacity
    ))
    return _table_response(table)


@router.post("/{table_id}/lift", response_model=TableLiftResponse)
async def lift_table(
    table_id: uuid.UUID,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    role: str = Depends(require_role("admin", "service")),
    services: Services = Depends(get_services)
):
    """Force-close every active session on the table and free it"""
    lift = unwrap_or_raise(await services.registry.lift_table(table_id, restaurant_id))
    return TableLiftResponse(
        table=_table_response(lift.table),
        closed_session_ids=[s.id for s in lift.closed_sessions],
    )


@router.delete("/{table_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_table(
    table_id: uuid.UUID,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    role: str = Depends(require_role("admin")),
    services: Services = Depends(get_services)
):
    """Delete a table without an active session"""
    unwrap_or_raise(await services.registry.delete_table(table_id, restaurant_id))
