"""
Orders API endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Field, SQLModel
from typing import List, Optional
from decimal import Decimal
import structlog
import uuid

from dinein.api.errors import unwrap_or_raise
from dinein.core.dependencies import (
    get_optional_restaurant_id,
    get_restaurant_id,
    get_services,
    get_user_role,
)
from dinein.models import OrderStatus, OrderType
from dinein.services.container import Services
from dinein.services.order_orchestrator import CartItem

logger = structlog.get_logger(__name__)
router = APIRouter()


# Pydantic schemas
class OrderItemCreate(SQLModel):
    """Schema for one requested line"""
    product_id: uuid.UUID
    quantity: int = 1
    notes: Optional[str] = Field(default=None, max_length=500)


class OrderCreate(SQLModel):
    """Schema for placing an order by session code or table id"""
    items: List[OrderItemCreate] = []
    order_type: OrderType = OrderType.DINE_IN
    session_code: Optional[str] = None
    table_id: Optional[uuid.UUID] = None
    customer_name: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tip: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")


class OrderStatusUpdate(SQLModel):
    """Schema for a status change"""
    status: OrderStatus
    version: Optional[int] = Field(default=None, description="Version the client last saw")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    restaurant_id: Optional[uuid.UUID] = Depends(get_optional_restaurant_id),
    services: Services = Depends(get_services)
):
    """Place an order (public when bound by session code or table id)"""
    result = await services.orchestrator.create_order(
        restaurant_id,
        items=[
            CartItem(product_id=i.product_id, quantity=i.quantity, notes=i.notes)
            for i in order_data.items
        ],
        order_type=order_data.order_type,
        session_code=order_data.session_code,
        table_id=order_data.table_id,
        customer_name=order_data.customer_name,
        notes=order_data.notes,
        tip=order_data.tip,
        discount=order_data.discount,
    )
    detail = unwrap_or_raise(result)
    return detail.to_dict()


@router.get("")
async def list_orders(
    session_code: Optional[str] = Query(None),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    active: bool = Query(False),
    restaurant_id: Optional[uuid.UUID] = Depends(get_optional_restaurant_id),
    services: Services = Depends(get_services)
):
    """List orders newest first; guests list by session code, staff by restaurant"""
    if restaurant_id is None and not session_code:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="A session code or staff credentials are required",
        )

    details = unwrap_or_raise(await services.orchestrator.list_orders(
        restaurant_id,
        session_code=session_code,
        status=status_filter,
        active_only=active,
    ))
    return [d.to_dict() for d in details]


@router.get("/{order_id}")
async def get_order(
    order_id: uuid.UUID,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    services: Services = Depends(get_services)
):
    """Get one order"""
    detail = unwrap_or_raise(await services.orchestrator.get_order(order_id, restaurant_id))
    return detail.to_dict()


@router.patch("/{order_id}")
async def update_order_status(
    order_id: uuid.UUID,
    update: OrderStatusUpdate,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    role: str = Depends(get_user_role),
    services: Services = Depends(get_services)
):
    """Move an order to a new status (kitchen, service or admin)"""
    detail = unwrap_or_raise(await services.orchestrator.update_order_status(
        restaurant_id, order_id, update.status, actor_role=role, expected_version=update.version
    ))
    return detail.to_dict()
