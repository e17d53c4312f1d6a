"""
Table sessions API endpoints
"""

from fastapi import APIRouter, Depends
from sqlmodel import SQLModel
from typing import Any, Dict, List, Optional
from datetime import datetime
import structlog
import uuid

from dinein.api.errors import unwrap_or_raise
from dinein.core.dependencies import get_restaurant_id, get_services, require_role
from dinein.models import CloseReason
from dinein.services.container import Services
from dinein.services.session_registry import SessionDetail

logger = structlog.get_logger(__name__)
router = APIRouter()


# Pydantic schemas
class TableSessionResponse(SQLModel):
    """Schema for table session response"""
    id: uuid.UUID
    table_id: uuid.UUID
    table_number: Optional[int] = None
    session_code: str
    active: bool
    customer_name: Optional[str] = None
    created_at: datetime
    closed_at: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    orders: List[Dict[str, Any]] = []


class SessionCloseResponse(SQLModel):
    """Schema for the result of closing a session"""
    session_id: uuid.UUID
    table_number: Optional[int] = None
    reason: CloseReason
    forced_order_ids: List[uuid.UUID]
    bill: Dict[str, Any]


class SessionCheckResponse(SQLModel):
    session_id: uuid.UUID
    closed: bool


def _session_response(detail: SessionDetail) -> TableSessionResponse:
    session = detail.session
    return TableSessionResponse(
        id=session.id,
        table_id=session.table_id,
        table_number=detail.table.number if detail.table else None,
        session_code=session.session_code,
        active=session.active,
        customer_name=session.customer_name,
        created_at=session.created_at,
        closed_at=session.closed_at,
        close_reason=session.close_reason,
        orders=[
            {
                "id": str(o.id),
                "order_number": o.order_number,
                "status": o.status.value,
                "total": str(o.total),
            }
            for o in detail.orders
        ],
    )


@router.post("/cleanup")
async def cleanup_sessions(
    role: str = Depends(require_role("admin")),
    services: Services = Depends(get_services)
):
    """Run an inactivity sweep now"""
    report = await services.reaper.sweep()
    logger.info("Manual session cleanup", role=role, closed=report.closed)
    return report.to_dict()


@router.get("/by-code/{session_code}", response_model=TableSessionResponse)
async def get_session_by_code(
    session_code: str,
    services: Services = Depends(get_services)
):
    """Get a session by the code handed to the guest"""
    detail = unwrap_or_raise(await services.registry.get_session(session_code=session_code))
    return _session_response(detail)


@router.get("/{session_id}", response_model=TableSessionResponse)
async def get_table_session(
    session_id: uuid.UUID,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    services: Services = Depends(get_services)
):
    """Get a session with its orders"""
    detail = unwrap_or_raise(
        await services.registry.get_session(session_id=session_id, restaurant_id=restaurant_id)
    )
    return _session_response(detail)


@router.post("/{session_id}/close", response_model=SessionCloseResponse)
async def close_table_session(
    session_id: uuid.UUID,
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    role: str = Depends(require_role("admin", "service")),
    services: Services = Depends(get_services)
):
    """Close a session: settle its orders, free the table and return the bill"""
    closure = unwrap_or_raise(await services.registry.close_session(
        session_id, CloseReason.EXPLICIT, restaurant_id=restaurant_id, actor_role=role
    ))
    return SessionCloseResponse(
        session_id=closure.session.id,
        table_number=closure.table.number if closure.table else None,
        reason=closure.reason,
        forced_order_ids=closure.forced_order_ids,
        bill=closure.bill.to_dict(),
    )


@router.post("/{session_id}/check", response_model=SessionCheckResponse)
async def check_table_session(
    session_id: uuid.UUID,
    services: Services = Depends(get_services)
):
    """Close the session right away if nothing is in progress (e.g. after a review)"""
    closed = unwrap_or_raise(await services.reaper.check_session(session_id))
    return SessionCheckResponse(session_id=session_id, closed=closed)
