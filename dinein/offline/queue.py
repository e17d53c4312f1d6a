"""
Offline order queue

Durable client-side queue for orders placed while the device is offline.
Entries live in a local SQLite file and move pending_sync -> synced, or to
failed after too many attempts or a rejection by the server. The queue is
independent of the server-side session engine; it only submits payloads to
the public orders endpoint.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from sqlalchemy import Column, JSON
from sqlmodel import Field, Session, SQLModel, create_engine, select
import httpx
import structlog
import uuid

from dinein.core.clock import Clock, utcnow

logger = structlog.get_logger(__name__)


class QueueState(str, Enum):
    """Sync state of a queued order"""
    PENDING_SYNC = "pending_sync"
    SYNCED = "synced"
    FAILED = "failed"


class QueuedOrder(SQLModel, table=True):
    """Order payload waiting to be sent to the server"""

    __tablename__ = "queued_orders"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Request body for POST /orders",
        sa_column=Column(JSON, nullable=False)
    )
    state: QueueState = Field(default=QueueState.PENDING_SYNC, index=True)
    sync_attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    remote_order_id: Optional[str] = Field(default=None, max_length=64)

    created_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None


class OrderRejected(Exception):
    """The server refused the order; retrying the same payload cannot succeed"""

    def __init__(self, status_code: int, detail: Any = None):
        super().__init__(f"Order rejected with status {status_code}")
        self.status_code = status_code
        self.detail = detail


@dataclass
class SyncReport:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    still_pending: int = 0
    synced_ids: List[uuid.UUID] = field(default_factory=list)


class OfflineOrderQueue:
    """SQLite-backed queue of unsent orders"""

    def __init__(
        self,
        path: str = "offline_orders.db",
        max_attempts: int = 5,
        clock: Clock = utcnow
    ):
        self.engine = create_engine(f"sqlite:///{path}", echo=False)
        self.max_attempts = max_attempts
        self.clock = clock
        SQLModel.metadata.create_all(self.engine, tables=[QueuedOrder.__table__])

    def enqueue(self, payload: Dict[str, Any]) -> QueuedOrder:
        """Store an order payload for later submission"""
        with Session(self.engine) as session:
            entry = QueuedOrder(payload=dict(payload), created_at=self.clock())
            session.add(entry)
            session.commit()
            session.refresh(entry)

        logger.info("Order queued offline", entry_id=str(entry.id))
        return entry

    def pending(self) -> List[QueuedOrder]:
        """Entries waiting to be synced, oldest first"""
        return self._by_state(QueueState.PENDING_SYNC)

    def failed(self) -> List[QueuedOrder]:
        return self._by_state(QueueState.FAILED)

    def get(self, entry_id: uuid.UUID) -> Optional[QueuedOrder]:
        with Session(self.engine) as session:
            return session.get(QueuedOrder, entry_id)

    def counts(self) -> Dict[str, int]:
        with Session(self.engine) as session:
            entries = session.exec(select(QueuedOrder)).all()
        counts = {state.value: 0 for state in QueueState}
        for entry in entries:
            counts[entry.state.value] += 1
        return counts

    async def sync(self, submit: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]) -> SyncReport:
        """
        Submit every pending entry once.

        A rejected entry fails immediately. Any other error increments the
        attempt counter; the entry fails once it reaches max_attempts.
        """
        report = SyncReport()

        for entry in self.pending():
            report.attempted += 1
            error: Optional[str] = None
            final = False
            response: Optional[Dict[str, Any]] = None

            try:
                response = await submit(entry.payload)
            except OrderRejected as e:
                error = f"{e} {e.detail}" if e.detail else str(e)
                final = True
            except Exception as e:
                error = str(e) or e.__class__.__name__

            with Session(self.engine) as session:
                stored = session.get(QueuedOrder, entry.id)
                stored.sync_attempts += 1
                stored.last_attempt_at = self.clock()

                if error is None:
                    stored.state = QueueState.SYNCED
                    stored.synced_at = stored.last_attempt_at
                    stored.last_error = None
                    if response and response.get("id"):
                        stored.remote_order_id = str(response["id"])
                    report.synced += 1
                    report.synced_ids.append(stored.id)
                    logger.info("Offline order synced", entry_id=str(stored.id))
                else:
                    stored.last_error = error[:1000]
                    if final or stored.sync_attempts >= self.max_attempts:
                        stored.state = QueueState.FAILED
                        report.failed += 1
                        logger.warning(
                            "Offline order failed",
                            entry_id=str(stored.id),
                            attempts=stored.sync_attempts,
                            error=error,
                        )
                    else:
                        report.still_pending += 1
                        logger.info(
                            "Offline order sync will be retried",
                            entry_id=str(stored.id),
                            attempts=stored.sync_attempts,
                            error=error,
                        )

                session.add(stored)
                session.commit()

        return report

    def retry_failed(self) -> int:
        """Move failed entries back to pending_sync with a fresh attempt counter"""
        with Session(self.engine) as session:
            entries = session.exec(
                select(QueuedOrder).where(QueuedOrder.state == QueueState.FAILED)
            ).all()
            for entry in entries:
                entry.state = QueueState.PENDING_SYNC
                entry.sync_attempts = 0
                session.add(entry)
            session.commit()

        if entries:
            logger.info("Failed offline orders requeued", count=len(entries))
        return len(entries)

    def _by_state(self, state: QueueState) -> List[QueuedOrder]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(QueuedOrder)
                .where(QueuedOrder.state == state)
                .order_by(QueuedOrder.created_at)
            ).all())

    def close(self):
        self.engine.dispose()


class HttpOrderSubmitter:
    """Posts queued payloads to the orders endpoint"""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        path: str = "/api/v1/orders",
        timeout: float = 10.0
    ):
        self.path = path
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.post(self.path, json=payload)
        if 400 <= response.status_code < 500:
            try:
                body = response.json()
                detail = body.get("detail") if isinstance(body, dict) else body
            except ValueError:
                detail = response.text
            raise OrderRejected(response.status_code, detail)
        response.raise_for_status()
        return response.json()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
