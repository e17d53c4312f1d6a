"""
Inactivity reaper

Background job that reclaims tables whose sessions went stale without
being closed. Runs on a fixed interval inside the application process and
can also be triggered on demand.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
import asyncio
import structlog
import uuid

from dinein.core.clock import Clock, utcnow
from dinein.core.errors import ErrorKind, SessionNotFound, StoreUnavailable
from dinein.core.results import Result
from dinein.core.database import SessionFactory
from dinein.models import CloseReason, Order, TableSession
from dinein.services import state_machine
from dinein.services.session_registry import SessionRegistry

logger = structlog.get_logger(__name__)


@dataclass
class ReaperReport:
    """Counters for one sweep"""

    checked: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    closed_session_ids: List[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "checked": self.checked,
            "closed": self.closed,
            "skipped": self.skipped,
            "failed": self.failed,
            "closed_session_ids": [str(s) for s in self.closed_session_ids],
        }


def stale_reason(
    orders: Sequence[Order],
    now: datetime,
    threshold: timedelta
) -> Optional[CloseReason]:
    """
    Decide whether a session should be closed.

    orders must be newest first. Sessions with unsettled orders are never
    stale. A session that never ordered is reclaimed immediately; otherwise
    the newest order's last activity must be older than the threshold.
    """
    if any(not state_machine.is_settled(o.status) for o in orders):
        return None
    if not orders:
        return CloseReason.NO_ORDERS
    if orders[0].last_activity_at < now - threshold:
        return CloseReason.INACTIVITY
    return None


class InactivityReaper:
    """Periodically closes stale table sessions"""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: SessionRegistry,
        interval_seconds: float = 300,
        inactivity_minutes: float = 30,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.threshold = timedelta(minutes=inactivity_minutes)
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the periodic loop; the first sweep runs immediately"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Inactivity reaper started",
            interval_seconds=self.interval_seconds,
            threshold_minutes=self.threshold.total_seconds() / 60,
        )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Inactivity reaper stopped")

    async def _run(self):
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Reaper sweep failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def sweep(self) -> ReaperReport:
        """Check every active session once and close the stale ones"""
        report = ReaperReport()
        try:
            sessions = await self._load_active_sessions()
        except SQLAlchemyError as e:
            logger.error("Reaper could not load sessions", error=str(e), exc_info=True)
            report.failed += 1
            return report

        now = self.clock()
        for session, orders in sessions:
            report.checked += 1
            try:
                reason = stale_reason(orders, now, self.threshold)
                if reason is None:
                    report.skipped += 1
                    continue

                result = await self.registry.close_session(session.id, reason)
                if result.ok:
                    report.closed += 1
                    report.closed_session_ids.append(session.id)
                    logger.info(
                        "Reaper closed session",
                        session_id=str(session.id),
                        table_id=str(session.table_id),
                        reason=reason.value,
                    )
                elif result.error.kind == ErrorKind.CONFLICT:
                    # Closed or re-ordered concurrently
                    report.skipped += 1
                    logger.info(
                        "Reaper left session open",
                        session_id=str(session.id),
                        code=result.error.code,
                    )
                else:
                    report.failed += 1
                    logger.warning(
                        "Reaper failed to close session",
                        session_id=str(session.id),
                        code=result.error.code,
                        message=result.error.message,
                    )
            except Exception as e:
                report.failed += 1
                logger.error(
                    "Reaper failed to close session",
                    session_id=str(session.id),
                    error=str(e),
                    exc_info=True,
                )
                continue

        if report.checked:
            logger.info("Reaper sweep complete", **report.to_dict())
        return report

    async def check_session(self, session_id: uuid.UUID) -> Result[bool]:
        """
        Close one session right away when nothing is in progress.

        Skips the grace period. Returns True when the session was closed and
        False when it was already inactive or still has unsettled orders.
        """
        try:
            async with self.session_factory() as db:
                session = await db.get(TableSession, session_id)
                if session is None:
                    return Result.failure(SessionNotFound(session_id))
                if not session.active:
                    return Result.success(False)
                orders = (await db.exec(
                    select(Order).where(Order.session_id == session.id)
                )).all()
        except SQLAlchemyError as e:
            logger.error("Session check failed", session_id=str(session_id), error=str(e), exc_info=True)
            return Result.failure(StoreUnavailable("check_session"))

        if any(not state_machine.is_settled(o.status) for o in orders):
            return Result.success(False)

        result = await self.registry.close_session(session_id, CloseReason.MANUAL_CHECK)
        if not result.ok:
            if result.error.kind == ErrorKind.CONFLICT:
                return Result.success(False)
            return Result.failure(result.error)
        return Result.success(True)

    async def _load_active_sessions(self) -> List[Tuple[TableSession, List[Order]]]:
        """Active sessions, each with its orders newest first"""
        async with self.session_factory() as db:
            sessions = (await db.exec(
                select(TableSession)
                .where(TableSession.active == True)  # noqa: E712
                .order_by(TableSession.created_at)
            )).all()
            if not sessions:
                return []

            orders = (await db.exec(
                select(Order)
                .where(Order.session_id.in_([s.id for s in sessions]))
                .order_by(Order.created_at.desc())
            )).all()

        by_session: Dict[uuid.UUID, List[Order]] = {s.id: [] for s in sessions}
        for order in orders:
            by_session[order.session_id].append(order)
        return [(s, by_session[s.id]) for s in sessions]
