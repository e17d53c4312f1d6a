"""
QR scan endpoint (public)
"""

from fastapi import APIRouter, Depends
from sqlmodel import SQLModel
import structlog
import uuid

from dinein.api.errors import unwrap_or_raise
from dinein.core.dependencies import get_services
from dinein.services.container import Services

logger = structlog.get_logger(__name__)
router = APIRouter()


class ScanRequest(SQLModel):
    """Schema for a guest scanning a table QR code"""
    qr_code: str


class ScanResponse(SQLModel):
    """Session the guest is bound to"""
    session_id: uuid.UUID
    session_code: str
    restaurant_id: uuid.UUID
    table_id: uuid.UUID
    table_number: int
    existing: bool


@router.post("", response_model=ScanResponse)
async def scan_table(
    request: ScanRequest,
    services: Services = Depends(get_services)
):
    """Resolve the scanned table and get or create its active session"""
    resolution = unwrap_or_raise(await services.registry.scan(request.qr_code))

    logger.info(
        "QR scanned",
        table_number=resolution.table_number,
        session_id=str(resolution.session.id),
        created=resolution.created,
    )
    return ScanResponse(
        session_id=resolution.session.id,
        session_code=resolution.session_code,
        restaurant_id=resolution.session.restaurant_id,
        table_id=resolution.table.id,
        table_number=resolution.table_number,
        existing=not resolution.created,
    )
