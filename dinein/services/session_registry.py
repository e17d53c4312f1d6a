"""
Table/session registry

Owns the table availability and one-active-session-per-table invariants.
Every multi-row change runs in a single transaction; events are published
after commit.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
import secrets
import structlog
import uuid

from dinein.core.clock import Clock, utcnow
from dinein.core.config import Settings, get_settings
from dinein.core.database import SessionFactory
from dinein.core.errors import (
    MissingSessionBinding,
    OrderModified,
    RestaurantNotFound,
    SessionClosed,
    SessionHasActiveOrders,
    SessionNotFound,
    StoreUnavailable,
    TableHasActiveSession,
    TableNotFound,
    TableNumberTaken,
)
from dinein.core.results import Result
from dinein.models import (
    CloseReason,
    Order,
    OrderStatus,
    OrderStatusChange,
    Restaurant,
    Table,
    TableSession,
    TransitionKind,
)
from dinein.realtime.channel import FanoutChannel
from dinein.realtime.events import (
    OrderStatusChanged,
    OrderUpdated,
    SessionEnded,
    SessionOpened,
    TableCreated,
    TableDeleted,
    TableUpdated,
)
from dinein.services import state_machine
from dinein.services.base import service_operation

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


@dataclass
class SessionResolution:
    """Session a client is bound to after a scan or an order"""

    session: TableSession
    table: Table
    created: bool

    @property
    def session_code(self) -> str:
        return self.session.session_code

    @property
    def table_number(self) -> int:
        return self.table.number


@dataclass
class BillSummary:
    """Totals over the non-cancelled orders of a session"""

    order_numbers: List[str] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    tip: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")

    @classmethod
    def from_orders(cls, orders: List[Order]) -> "BillSummary":
        bill = cls()
        for order in sorted(orders, key=lambda o: o.created_at):
            if order.status == OrderStatus.CANCELLED:
                continue
            bill.order_numbers.append(order.order_number)
            bill.subtotal += order.subtotal
            bill.tax += order.tax
            bill.tip += order.tip
            bill.discount += order.discount
            bill.total += order.total
        return bill

    def to_dict(self) -> Dict:
        return {
            "order_numbers": list(self.order_numbers),
            "subtotal": str(self.subtotal.quantize(CENT)),
            "tax": str(self.tax.quantize(CENT)),
            "tip": str(self.tip.quantize(CENT)),
            "discount": str(self.discount.quantize(CENT)),
            "total": str(self.total.quantize(CENT)),
        }


@dataclass
class ForcedOrder:
    order: Order
    previous_status: OrderStatus


@dataclass
class SessionClosure:
    """Outcome of closing a session"""

    session: TableSession
    table: Optional[Table]
    reason: CloseReason
    forced: List[ForcedOrder] = field(default_factory=list)
    bill: BillSummary = field(default_factory=BillSummary)

    @property
    def forced_order_ids(self) -> List[uuid.UUID]:
        return [f.order.id for f in self.forced]


@dataclass
class TableLift:
    """Outcome of lifting a table"""

    table: Table
    closed_sessions: List[TableSession] = field(default_factory=list)


@dataclass
class TableView:
    table: Table
    active_session: Optional[TableSession] = None


@dataclass
class SessionDetail:
    session: TableSession
    table: Optional[Table]
    orders: List[Order] = field(default_factory=list)


async def claim_session(db: AsyncSession, session_id: uuid.UUID, **values) -> bool:
    """
    Write to an active session row, returning False when it is no longer active.

    Both order placement and closing go through this conditional write, so
    the second of two concurrent writers either waits for the first or sees
    the row already deactivated.
    """
    result = await db.execute(
        update(TableSession)
        .where(
            TableSession.id == session_id,
            TableSession.active == True  # noqa: E712
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


class SessionRegistry:
    """Creates, reads and closes table sessions"""

    def __init__(
        self,
        session_factory: SessionFactory,
        channel: FanoutChannel,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.settings = settings or get_settings()
        self.clock = clock

    # Session resolution

    @service_operation("resolve_session")
    async def resolve_or_create_session(
        self,
        restaurant_id: Optional[uuid.UUID],
        *,
        session_code: Optional[str] = None,
        table_id: Optional[uuid.UUID] = None,
        customer_name: Optional[str] = None
    ) -> SessionResolution:
        """
        Resolve a session by code, or get-or-create the active session of a
        table.

        Creation and the table availability flip happen in one transaction.
        Concurrent creators on the same table collide on the partial unique
        index; the loser re-reads and returns the winner's session.
        """
        if session_code:
            return await self._resolve_by_code(restaurant_id, session_code)
        if table_id is None:
            raise MissingSessionBinding()

        attempts = max(1, self.settings.SESSION_CREATE_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                resolution = await self._get_or_create(restaurant_id, table_id, customer_name)
            except IntegrityError:
                logger.info(
                    "Session creation collided",
                    table_id=str(table_id),
                    attempt=attempt,
                )
                async with self.session_factory() as db:
                    table = await self._get_table(db, table_id, restaurant_id)
                    existing = await self._find_active_session(db, table.id)
                if existing is not None:
                    return SessionResolution(session=existing, table=table, created=False)
                # Session code collision, try again with a fresh code
                continue

            if resolution.created:
                logger.info(
                    "Table session created",
                    session_id=str(resolution.session.id),
                    table_id=str(resolution.table.id),
                    table_number=resolution.table.number,
                )
                await self.channel.publish(SessionOpened(
                    session_id=resolution.session.id,
                    session_code=resolution.session.session_code,
                    table_id=resolution.table.id,
                    table_number=resolution.table.number,
                    restaurant_id=resolution.table.restaurant_id,
                ))
                await self.channel.publish(TableUpdated(
                    table_id=resolution.table.id,
                    number=resolution.table.number,
                    available=False,
                    restaurant_id=resolution.table.restaurant_id,
                ))
            return resolution

        logger.error("Could not create table session", table_id=str(table_id), attempts=attempts)
        raise StoreUnavailable("create_session")

    async def scan(self, qr_code: str) -> Result[SessionResolution]:
        """Resolve the table behind a QR token and bind a session to it"""
        table = await self._find_table_by_qr(qr_code)
        if not table.ok:
            return table
        return await self.resolve_or_create_session(
            table.value.restaurant_id, table_id=table.value.id
        )

    @service_operation("scan")
    async def _find_table_by_qr(self, qr_code: str) -> Table:
        async with self.session_factory() as db:
            table = (await db.exec(select(Table).where(Table.qr_code == qr_code))).first()
        if table is None:
            raise TableNotFound(qr_code)
        return table

    async def _resolve_by_code(
        self, restaurant_id: Optional[uuid.UUID], session_code: str
    ) -> SessionResolution:
        async with self.session_factory() as db:
            query = select(TableSession).where(TableSession.session_code == session_code)
            if restaurant_id is not None:
                query = query.where(TableSession.restaurant_id == restaurant_id)
            session = (await db.exec(query)).first()
            if session is None:
                raise SessionNotFound(session_code)
            table = await db.get(Table, session.table_id)
            if table is None:
                raise TableNotFound(session.table_id)
        return SessionResolution(session=session, table=table, created=False)

    async def _get_or_create(
        self,
        restaurant_id: Optional[uuid.UUID],
        table_id: uuid.UUID,
        customer_name: Optional[str]
    ) -> SessionResolution:
        async with self.session_factory() as db, db.begin():
            table = await self._get_table(db, table_id, restaurant_id)

            existing = await self._find_active_session(db, table.id)
            if existing is not None:
                return SessionResolution(session=existing, table=table, created=False)

            now = self.clock()
            session = TableSession(
                restaurant_id=table.restaurant_id,
                table_id=table.id,
                session_code=self._new_session_code(),
                customer_name=customer_name,
                active=True,
                created_at=now,
            )
            db.add(session)

            table.available = False
            table.updated_at = now
            db.add(table)

            # Unique index violations surface here and roll back both rows
            await db.flush()

        return SessionResolution(session=session, table=table, created=True)

    def _new_session_code(self) -> str:
        return secrets.token_hex(self.settings.SESSION_CODE_BYTES).upper()

    # Closing

    @service_operation("close_session")
    async def close_session(
        self,
        session_id: uuid.UUID,
        reason: CloseReason,
        restaurant_id: Optional[uuid.UUID] = None,
        actor_role: Optional[str] = None
    ) -> SessionClosure:
        """
        Close a session and free its table in one transaction.

        An explicit close forces every unsettled order to COMPLETED through
        the administrative transition. Auto-expiry reasons refuse to close a
        session that still has unsettled orders.
        """
        reason = CloseReason(reason)

        async with self.session_factory() as db, db.begin():
            session = await self._get_session(db, session_id, restaurant_id)
            now = self.clock()

            # Deactivate before reading orders: order placement claims the
            # same row, so a concurrent order either committed already or
            # finds the session closed
            if not await claim_session(db, session.id, active=False, closed_at=now, close_reason=reason):
                raise SessionClosed(session.id)
            await db.refresh(session)

            orders = await self._session_orders(db, session.id)
            live = [o for o in orders if not state_machine.is_settled(o.status)]

            if reason.is_auto_expiry and live:
                raise SessionHasActiveOrders(session.id, [o.id for o in live])

            forced: List[ForcedOrder] = []
            if reason == CloseReason.EXPLICIT:
                for order in live:
                    target = state_machine.validate_administrative_close(order.status).unwrap()
                    previous = order.status
                    result = await db.execute(
                        update(Order)
                        .where(
                            Order.id == order.id,
                            Order.status == previous,
                            Order.version == order.version
                        )
                        .values(
                            status=target,
                            version=order.version + 1,
                            updated_at=now,
                            completed_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise OrderModified(order.id, order.version)
                    await db.refresh(order)
                    db.add(OrderStatusChange(
                        order_id=order.id,
                        from_status=previous,
                        to_status=target,
                        transition_kind=TransitionKind.ADMINISTRATIVE_CLOSE,
                        actor_role=actor_role,
                        created_at=now,
                    ))
                    forced.append(ForcedOrder(order=order, previous_status=previous))

            table = await db.get(Table, session.table_id)
            if table is not None:
                table.available = True
                table.updated_at = now
                db.add(table)

            closure = SessionClosure(
                session=session,
                table=table,
                reason=reason,
                forced=forced,
                bill=BillSummary.from_orders(orders),
            )

        logger.info(
            "Table session closed",
            session_id=str(session.id),
            reason=reason.value,
            forced_orders=len(forced),
        )

        table_number = table.number if table is not None else None
        for item in forced:
            for event_class in (OrderUpdated, OrderStatusChanged):
                await self.channel.publish(event_class(
                    order_id=item.order.id,
                    order_number=item.order.order_number,
                    status=item.order.status,
                    previous_status=item.previous_status,
                    table_number=table_number,
                    restaurant_id=session.restaurant_id,
                ))
        await self.channel.publish(SessionEnded(
            session_id=session.id,
            session_code=session.session_code,
            table_id=session.table_id,
            table_number=table_number,
            reason=reason,
            restaurant_id=session.restaurant_id,
        ))
        if table is not None:
            await self.channel.publish(TableUpdated(
                table_id=table.id,
                number=table.number,
                available=True,
                restaurant_id=table.restaurant_id,
            ))
        return closure

    @service_operation("lift_table")
    async def lift_table(self, table_id: uuid.UUID, restaurant_id: Optional[uuid.UUID]) -> TableLift:
        """Force-close every active session on a table and free it, ignoring orders"""
        async with self.session_factory() as db, db.begin():
            table = await self._get_table(db, table_id, restaurant_id)
            sessions = (await db.exec(
                select(TableSession).where(
                    TableSession.table_id == table.id,
                    TableSession.active == True  # noqa: E712
                )
                .with_for_update()
            )).all()

            now = self.clock()
            for session in sessions:
                session.active = False
                session.closed_at = now
                session.close_reason = CloseReason.LIFTED
                db.add(session)

            table.available = True
            table.updated_at = now
            db.add(table)

        logger.info("Table lifted", table_id=str(table.id), closed_sessions=len(sessions))

        for session in sessions:
            await self.channel.publish(SessionEnded(
                session_id=session.id,
                session_code=session.session_code,
                table_id=table.id,
                table_number=table.number,
                reason=CloseReason.LIFTED,
                restaurant_id=table.restaurant_id,
            ))
        await self.channel.publish(TableUpdated(
            table_id=table.id,
            number=table.number,
            available=True,
            restaurant_id=table.restaurant_id,
        ))
        return TableLift(table=table, closed_sessions=list(sessions))

    # Tables

    @service_operation("create_table")
    async def create_table(
        self,
        restaurant_id: uuid.UUID,
        number: int,
        capacity: int = 4
    ) -> Table:
        """Create a table with a fresh QR token"""
        try:
            async with self.session_factory() as db, db.begin():
                restaurant = await db.get(Restaurant, restaurant_id)
                if restaurant is None:
                    raise RestaurantNotFound(restaurant_id)

                taken = (await db.exec(
                    select(Table).where(
                        Table.restaurant_id == restaurant_id,
                        Table.number == number
                    )
                )).first()
                if taken is not None:
                    raise TableNumberTaken(number)

                table = Table(
                    restaurant_id=restaurant_id,
                    number=number,
                    capacity=capacity,
                    available=True,
                    qr_code=f"{restaurant.slug}-table-{number}-{secrets.token_hex(4)}",
                    created_at=self.clock(),
                )
                db.add(table)
                await db.flush()
        except IntegrityError:
            raise TableNumberTaken(number)

        logger.info("Table created", table_id=str(table.id), number=number)
        await self.channel.publish(TableCreated(
            table_id=table.id,
            number=table.number,
            available=True,
            restaurant_id=table.restaurant_id,
        ))
        return table

    @service_operation("delete_table")
    async def delete_table(self, table_id: uuid.UUID, restaurant_id: Optional[uuid.UUID]) -> Table:
        """Delete a table that has no active session, with its closed sessions"""
        async with self.session_factory() as db, db.begin():
            table = await self._get_table(db, table_id, restaurant_id)
            if await self._find_active_session(db, table.id) is not None:
                raise TableHasActiveSession(table.id)

            session_ids = select(TableSession.id).where(TableSession.table_id == table.id)
            # Orders outlive the table but lose their seating references
            await db.execute(
                update(Order)
                .where(Order.session_id.in_(session_ids))
                .values(session_id=None)
            )
            await db.execute(
                update(Order).where(Order.table_id == table.id).values(table_id=None)
            )
            await db.execute(delete(TableSession).where(TableSession.table_id == table.id))
            await db.delete(table)

        logger.info("Table deleted", table_id=str(table.id), number=table.number)
        await self.channel.publish(TableDeleted(
            table_id=table.id,
            number=table.number,
            available=None,
            restaurant_id=table.restaurant_id,
        ))
        return table

    @service_operation("list_tables")
    async def list_tables(self, restaurant_id: uuid.UUID) -> List[TableView]:
        async with self.session_factory() as db:
            tables = (await db.exec(
                select(Table).where(Table.restaurant_id == restaurant_id).order_by(Table.number)
            )).all()
            sessions = (await db.exec(
                select(TableSession).where(
                    TableSession.restaurant_id == restaurant_id,
                    TableSession.active == True  # noqa: E712
                )
            )).all()

        by_table = {s.table_id: s for s in sessions}
        return [TableView(table=t, active_session=by_table.get(t.id)) for t in tables]

    @service_operation("get_session")
    async def get_session(
        self,
        session_id: Optional[uuid.UUID] = None,
        session_code: Optional[str] = None,
        restaurant_id: Optional[uuid.UUID] = None
    ) -> SessionDetail:
        """Load a session by id or code with its table and orders"""
        async with self.session_factory() as db:
            if session_id is not None:
                session = await self._get_session(db, session_id, restaurant_id)
            elif session_code:
                query = select(TableSession).where(TableSession.session_code == session_code)
                if restaurant_id is not None:
                    query = query.where(TableSession.restaurant_id == restaurant_id)
                session = (await db.exec(query)).first()
                if session is None:
                    raise SessionNotFound(session_code)
            else:
                raise MissingSessionBinding()

            table = await db.get(Table, session.table_id)
            orders = await self._session_orders(db, session.id)
        return SessionDetail(session=session, table=table, orders=orders)

    # Queries

    async def _get_table(
        self, db: AsyncSession, table_id: uuid.UUID, restaurant_id: Optional[uuid.UUID]
    ) -> Table:
        table = await db.get(Table, table_id)
        if table is None or (restaurant_id is not None and table.restaurant_id != restaurant_id):
            raise TableNotFound(table_id)
        return table

    async def _get_session(
        self, db: AsyncSession, session_id: uuid.UUID, restaurant_id: Optional[uuid.UUID]
    ) -> TableSession:
        session = await db.get(TableSession, session_id)
        if session is None or (restaurant_id is not None and session.restaurant_id != restaurant_id):
            raise SessionNotFound(session_id)
        return session

    async def _find_active_session(self, db: AsyncSession, table_id: uuid.UUID) -> Optional[TableSession]:
        return (await db.exec(
            select(TableSession).where(
                TableSession.table_id == table_id,
                TableSession.active == True  # noqa: E712
            )
        )).first()

    async def _session_orders(self, db: AsyncSession, session_id: uuid.UUID) -> List[Order]:
        """Orders of a session, newest first"""
        return list((await db.exec(
            select(Order)
            .where(Order.session_id == session_id)
            .order_by(Order.created_at.desc())
        )).all())

