"""
Order orchestrator

Creates order snapshots against a table session, computes money fields,
allocates order numbers and drives status changes through the state
machine.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
import structlog
import uuid

from dinein.core.clock import Clock, utcnow
from dinein.core.config import Settings, get_settings
from dinein.core.database import SessionFactory
from dinein.core.errors import (
    CartEmpty,
    InvalidAmount,
    MissingSessionBinding,
    OrderModified,
    OrderNotFound,
    OrderNumberConflict,
    ProductNotFound,
    ProductUnavailable,
    RestaurantNotFound,
    SessionClosed,
    SessionNotFound,
)
from dinein.core.results import Result
from dinein.models import (
    CloseReason,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusChange,
    OrderType,
    Product,
    Restaurant,
    Table,
    TableSession,
    TransitionKind,
)
from dinein.realtime.channel import FanoutChannel
from dinein.realtime.events import OrderCreated, OrderStatusChanged, OrderUpdated
from dinein.services import state_machine
from dinein.services.base import service_operation
from dinein.services.session_registry import SessionRegistry, SessionResolution, claim_session

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Quantize an amount to cents, rounding half up"""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CartItem:
    """Requested line: product reference and quantity"""

    product_id: uuid.UUID
    quantity: int = 1
    notes: Optional[str] = None


@dataclass
class Totals:
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    discount: Decimal
    total: Decimal


def compute_totals(
    lines: Iterable[tuple],
    tax_rate: Decimal,
    tip: Decimal = ZERO,
    discount: Decimal = ZERO
) -> Totals:
    """
    Compute order money fields from (unit_price, quantity) pairs.

    tax = subtotal * tax_rate and total = subtotal + tax + tip - discount,
    each rounded half up to cents. Negative adjustments or a discount larger
    than the subtotal raise InvalidAmount.
    """
    tip = to_money(tip)
    discount = to_money(discount)
    if tip < ZERO:
        raise InvalidAmount("Tip cannot be negative", tip=str(tip))
    if discount < ZERO:
        raise InvalidAmount("Discount cannot be negative", discount=str(discount))

    subtotal = to_money(sum((Decimal(price) * quantity for price, quantity in lines), ZERO))
    if discount > subtotal:
        raise InvalidAmount(
            "Discount cannot exceed the subtotal",
            discount=str(discount),
            subtotal=str(subtotal),
        )

    tax = to_money(subtotal * Decimal(tax_rate))
    total = to_money(subtotal + tax + tip - discount)
    return Totals(subtotal=subtotal, tax=tax, tip=tip, discount=discount, total=total)


@dataclass
class OrderDetail:
    """Order with its items and seating context"""

    order: Order
    items: List[OrderItem] = field(default_factory=list)
    table_number: Optional[int] = None
    session_code: Optional[str] = None
    session_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        order = self.order
        return {
            "id": str(order.id),
            "order_number": order.order_number,
            "status": order.status.value,
            "version": order.version,
            "progress": state_machine.progress(order.status),
            "order_type": order.order_type.value,
            "customer_name": order.customer_name,
            "table_id": str(order.table_id) if order.table_id else None,
            "table_number": self.table_number,
            "session_id": str(order.session_id) if order.session_id else None,
            "session_code": self.session_code,
            "notes": order.notes,
            "subtotal": str(order.subtotal),
            "tax": str(order.tax),
            "tip": str(order.tip),
            "discount": str(order.discount),
            "total": str(order.total),
            "items": [
                {
                    "id": str(item.id),
                    "product_id": str(item.product_id),
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "notes": item.notes,
                }
                for item in self.items
            ],
            "created_at": order.created_at.isoformat(),
            "updated_at": order.updated_at.isoformat() if order.updated_at else None,
            "completed_at": order.completed_at.isoformat() if order.completed_at else None,
        }


class OrderOrchestrator:
    """Places orders and moves them through their lifecycle"""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: SessionRegistry,
        channel: FanoutChannel,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.channel = channel
        self.settings = settings or get_settings()
        self.clock = clock

    async def create_order(
        self,
        restaurant_id: Optional[uuid.UUID],
        *,
        items: Sequence[CartItem],
        order_type: OrderType = OrderType.DINE_IN,
        session_code: Optional[str] = None,
        table_id: Optional[uuid.UUID] = None,
        customer_name: Optional[str] = None,
        notes: Optional[str] = None,
        tip: Any = ZERO,
        discount: Any = ZERO
    ) -> Result[OrderDetail]:
        """
        Place an order.

        Cheap validation (cart, amounts, session binding, products) runs
        before a session can be created. The order, its items and the
        initial audit row are written in one transaction; order:new is
        published after commit.
        """
        order_type = OrderType(order_type)

        checked = self._check_cart(items, tip, discount)
        if not checked.ok:
            return checked

        if order_type == OrderType.DINE_IN and not session_code and table_id is None:
            return Result.failure(MissingSessionBinding())

        resolution: Optional[SessionResolution] = None
        products = await self._check_products(restaurant_id, items)
        if not products.ok:
            return products

        if session_code or table_id is not None:
            resolved = await self.registry.resolve_or_create_session(
                restaurant_id,
                session_code=session_code,
                table_id=table_id,
                customer_name=customer_name,
            )
            if not resolved.ok:
                return resolved
            resolution = resolved.value
            restaurant_id = resolution.session.restaurant_id
        elif restaurant_id is None:
            return Result.failure(MissingSessionBinding())

        placed = await self._place(
            restaurant_id,
            items=items,
            order_type=order_type,
            resolution=resolution,
            customer_name=customer_name,
            notes=notes,
            tip=tip,
            discount=discount,
        )
        if placed.ok:
            await self.channel.publish(OrderCreated(
                placed.value.to_dict(), restaurant_id=placed.value.order.restaurant_id
            ))
        elif resolution is not None and resolution.created:
            await self._release_session(resolution)
        return placed

    async def _release_session(self, resolution: SessionResolution) -> None:
        """Close a session this call opened when its first order failed"""
        closed = await self.registry.close_session(resolution.session.id, CloseReason.NO_ORDERS)
        if closed.ok:
            logger.info(
                "Released session after failed order",
                session_id=str(resolution.session.id),
                table_id=str(resolution.table.id),
            )
        else:
            logger.warning(
                "Could not release session after failed order",
                session_id=str(resolution.session.id),
                error=closed.error.code,
            )

    def _check_cart(self, items: Sequence[CartItem], tip: Any, discount: Any) -> Result[None]:
        if not items:
            return Result.failure(CartEmpty())
        if len(items) > self.settings.MAX_ITEMS_PER_ORDER:
            return Result.failure(InvalidAmount(
                f"An order can contain at most {self.settings.MAX_ITEMS_PER_ORDER} items",
                items=len(items),
            ))
        for item in items:
            if item.quantity < 1 or item.quantity > self.settings.MAX_QUANTITY_PER_ITEM:
                return Result.failure(InvalidAmount(
                    f"Quantity must be between 1 and {self.settings.MAX_QUANTITY_PER_ITEM}",
                    product_id=item.product_id,
                    quantity=item.quantity,
                ))
        try:
            if to_money(tip) < ZERO:
                return Result.failure(InvalidAmount("Tip cannot be negative", tip=str(tip)))
            if to_money(discount) < ZERO:
                return Result.failure(InvalidAmount("Discount cannot be negative", discount=str(discount)))
        except ArithmeticError:
            return Result.failure(InvalidAmount("Malformed amount", tip=str(tip), discount=str(discount)))
        return Result.success()

    @service_operation("check_products")
    async def _check_products(self, restaurant_id: Optional[uuid.UUID], items: Sequence[CartItem]) -> None:
        async with self.session_factory() as db:
            await self._load_products(db, restaurant_id, items)

    @service_operation("create_order")
    async def _place(
        self,
        restaurant_id: uuid.UUID,
        *,
        items: Sequence[CartItem],
        order_type: OrderType,
        resolution: Optional[SessionResolution],
        customer_name: Optional[str],
        notes: Optional[str],
        tip: Any,
        discount: Any
    ) -> OrderDetail:
        order_number = None
        try:
            async with self.session_factory() as db, db.begin():
                restaurant = await db.get(Restaurant, restaurant_id)
                if restaurant is None:
                    raise RestaurantNotFound(restaurant_id)

                session: Optional[TableSession] = None
                if resolution is not None:
                    session = await db.get(TableSession, resolution.session.id)
                    if session is None:
                        raise SessionNotFound(resolution.session.id)
                    if not session.active:
                        raise SessionClosed(session.id)

                products = await self._load_products(db, restaurant_id, items)
                totals = compute_totals(
                    ((products[item.product_id].price, item.quantity) for item in items),
                    restaurant.tax_rate,
                    tip=tip,
                    discount=discount,
                )

                now = self.clock()
                # The session may have closed since it was read; claim its row
                # so a concurrent close waits for this order or wins outright
                if session is not None and not await claim_session(db, session.id, updated_at=now):
                    raise SessionClosed(session.id)

                order_number = await self._allocate_order_number(db, restaurant_id)

                order = Order(
                    restaurant_id=restaurant_id,
                    order_number=order_number,
                    table_id=session.table_id if session is not None else None,
                    session_id=session.id if session is not None else None,
                    customer_name=customer_name or (session.customer_name if session else None) or "Guest",
                    order_type=order_type,
                    status=OrderStatus.PENDING,
                    notes=notes,
                    subtotal=totals.subtotal,
                    tax=totals.tax,
                    tip=totals.tip,
                    discount=totals.discount,
                    total=totals.total,
                    created_at=now,
                    updated_at=now,
                )
                db.add(order)
                # Surfaces an order number collision before any child row is written
                await db.flush()

                order_items = []
                for item in items:
                    product = products[item.product_id]
                    order_item = OrderItem(
                        order_id=order.id,
                        product_id=product.id,
                        name=product.name,
                        quantity=item.quantity,
                        unit_price=to_money(product.price),
                        notes=item.notes,
                    )
                    db.add(order_item)
                    order_items.append(order_item)

                db.add(OrderStatusChange(
                    order_id=order.id,
                    from_status=None,
                    to_status=OrderStatus.PENDING,
                    transition_kind=TransitionKind.STANDARD,
                    created_at=now,
                ))

                await db.flush()
        except IntegrityError:
            if order_number is None:
                raise
            logger.error("Order number collision", restaurant_id=str(restaurant_id), order_number=order_number)
            raise OrderNumberConflict(order_number)

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            session_id=str(order.session_id) if order.session_id else None,
            total=str(order.total),
        )
        return OrderDetail(
            order=order,
            items=order_items,
            table_number=resolution.table.number if resolution is not None else None,
            session_code=resolution.session.session_code if resolution is not None else None,
            session_created=resolution.created if resolution is not None else False,
        )

    async def _load_products(
        self, db: AsyncSession, restaurant_id: Optional[uuid.UUID], items: Sequence[CartItem]
    ) -> Dict[uuid.UUID, Product]:
        query = select(Product).where(Product.id.in_({item.product_id for item in items}))
        if restaurant_id is not None:
            query = query.where(Product.restaurant_id == restaurant_id)
        rows = (await db.exec(query)).all()
        products = {p.id: p for p in rows}

        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)
            if not product.available:
                raise ProductUnavailable(item.product_id)
        return products

    async def _allocate_order_number(self, db: AsyncSession, restaurant_id: uuid.UUID) -> str:
        """Atomically bump the restaurant's order sequence and format it"""
        result = await db.execute(
            update(Restaurant)
            .where(Restaurant.id == restaurant_id)
            .values(order_sequence=Restaurant.order_sequence + 1)
            .returning(Restaurant.order_sequence)
        )
        sequence = result.scalar_one()
        return f"{self.settings.ORDER_NUMBER_PREFIX}-{sequence:0{self.settings.ORDER_NUMBER_WIDTH}d}"

    @service_operation("update_order_status")
    async def update_order_status(
        self,
        restaurant_id: Optional[uuid.UUID],
        order_id: uuid.UUID,
        new_status: OrderStatus,
        actor_role: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> OrderDetail:
        """
        Apply a validated status change and publish it.

        The write only lands if the order still has the status and version
        that were validated; otherwise OrderModified is returned and nothing
        changes. expected_version lets a client pin the version it displayed.
        """
        new_status = OrderStatus(new_status)

        async with self.session_factory() as db, db.begin():
            order = await self._get_order(db, order_id, restaurant_id)
            previous = order.status
            version = order.version

            # Check optimistic concurrency
            if expected_version is not None and expected_version != version:
                raise OrderModified(order.id, version)
            state_machine.validate_transition(previous, new_status).unwrap()

            now = self.clock()
            completed_at = order.completed_at
            if new_status in (OrderStatus.COMPLETED, OrderStatus.PAID) and completed_at is None:
                completed_at = now

            result = await db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status == previous,
                    Order.version == version
                )
                .values(
                    status=new_status,
                    version=version + 1,
                    updated_at=now,
                    completed_at=completed_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise OrderModified(order.id, version)
            await db.refresh(order)

            db.add(OrderStatusChange(
                order_id=order.id,
                from_status=previous,
                to_status=new_status,
                transition_kind=TransitionKind.STANDARD,
                actor_role=actor_role,
                created_at=now,
            ))

            detail = (await self._details(db, [order]))[0]

        logger.info(
            "Order status changed",
            order_id=str(order.id),
            previous_status=previous.value,
            status=new_status.value,
            actor_role=actor_role,
        )
        for event_class in (OrderUpdated, OrderStatusChanged):
            await self.channel.publish(event_class(
                order_id=order.id,
                order_number=order.order_number,
                status=new_status,
                previous_status=previous,
                table_number=detail.table_number,
                restaurant_id=order.restaurant_id,
            ))
        return detail

    @service_operation("get_order")
    async def get_order(self, order_id: uuid.UUID, restaurant_id: Optional[uuid.UUID] = None) -> OrderDetail:
        async with self.session_factory() as db:
            order = await self._get_order(db, order_id, restaurant_id)
            return (await self._details(db, [order]))[0]

    @service_operation("list_orders")
    async def list_orders(
        self,
        restaurant_id: Optional[uuid.UUID] = None,
        session_code: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        active_only: bool = False
    ) -> List[OrderDetail]:
        """
        Orders newest first, scoped to a restaurant or to a session code.

        This is the authoritative read clients use to reconcile after
        missing realtime events.
        """
        if restaurant_id is None and not session_code:
            raise MissingSessionBinding()

        async with self.session_factory() as db:
            query = select(Order)
            if restaurant_id is not None:
                query = query.where(Order.restaurant_id == restaurant_id)
            if session_code:
                session_query = select(TableSession).where(TableSession.session_code == session_code)
                if restaurant_id is not None:
                    session_query = session_query.where(TableSession.restaurant_id == restaurant_id)
                session = (await db.exec(session_query)).first()
                if session is None:
                    raise SessionNotFound(session_code)
                query = query.where(Order.session_id == session.id)
            if status is not None:
                query = query.where(Order.status == OrderStatus(status))
            if active_only:
                query = query.where(Order.status.not_in(state_machine.SETTLED_STATUSES))

            orders = (await db.exec(query.order_by(Order.created_at.desc()))).all()
            return await self._details(db, list(orders))

    async def _get_order(
        self, db: AsyncSession, order_id: uuid.UUID, restaurant_id: Optional[uuid.UUID]
    ) -> Order:
        order = await db.get(Order, order_id)
        if order is None or (restaurant_id is not None and order.restaurant_id != restaurant_id):
            raise OrderNotFound(order_id)
        return order

    async def _details(self, db: AsyncSession, orders: List[Order]) -> List[OrderDetail]:
        """Attach items, table numbers and session codes to orders"""
        if not orders:
            return []

        order_ids = [o.id for o in orders]
        items = (await db.exec(select(OrderItem).where(OrderItem.order_id.in_(order_ids)))).all()
        items_by_order: Dict[uuid.UUID, List[OrderItem]] = {}
        for item in items:
            items_by_order.setdefault(item.order_id, []).append(item)

        table_ids = {o.table_id for o in orders if o.table_id is not None}
        tables = {}
        if table_ids:
            tables = {
                t.id: t for t in (await db.exec(select(Table).where(Table.id.in_(table_ids)))).all()
            }

        session_ids = {o.session_id for o in orders if o.session_id is not None}
        sessions = {}
        if session_ids:
            sessions = {
                s.id: s
                for s in (await db.exec(select(TableSession).where(TableSession.id.in_(session_ids)))).all()
            }

        details = []
        for order in orders:
            table = tables.get(order.table_id)
            session = sessions.get(order.session_id)
            details.append(OrderDetail(
                order=order,
                items=items_by_order.get(order.id, []),
                table_number=table.number if table is not None else None,
                session_code=session.session_code if session is not None else None,
            ))
        return details
