"""
Order status state machine

Single source of truth for which order status transitions are legal.
Pure functions, no I/O: callers persist the new status and publish events.
"""

from typing import Dict, FrozenSet, List, Optional

from dinein.core.errors import InvalidTransition
from dinein.core.results import Result
from dinein.models.order import OrderStatus
from dinein.models.order_status_change import TransitionKind

__all__ = [
    "TRANSITIONS",
    "HAPPY_PATH",
    "TERMINAL_STATUSES",
    "SETTLED_STATUSES",
    "TransitionKind",
    "is_valid_transition",
    "validate_transition",
    "validate_administrative_close",
    "allowed_transitions",
    "is_terminal",
    "is_settled",
    "progress",
    "next_recommended",
]


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

HAPPY_PATH: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
    OrderStatus.PAID,
]

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED})

# Orders in these statuses do not keep a table session alive
SETTLED_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)


def allowed_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    """Statuses reachable from current in one step"""
    return TRANSITIONS.get(OrderStatus(current), frozenset())


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in allowed_transitions(current)


def validate_transition(current: OrderStatus, target: OrderStatus) -> Result[OrderStatus]:
    """
    Validate a status change requested by kitchen, service or admin.

    Fails with InvalidTransition when the order is already in the target
    status or when the target is not reachable from the current one.
    The error carries the allowed set.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current == target or not is_valid_transition(current, target):
        return Result.failure(InvalidTransition(current, target, allowed_transitions(current)))
    return Result.success(target)


def validate_administrative_close(current: OrderStatus) -> Result[OrderStatus]:
    """
    Validate the administrative transition to COMPLETED applied when staff
    close a session.

    Allowed from every status that is neither terminal nor already COMPLETED.
    """
    current = OrderStatus(current)
    if current in SETTLED_STATUSES:
        return Result.failure(InvalidTransition(current, OrderStatus.COMPLETED, frozenset()))
    return Result.success(OrderStatus.COMPLETED)


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def is_settled(status: OrderStatus) -> bool:
    return OrderStatus(status) in SETTLED_STATUSES


def progress(status: OrderStatus) -> int:
    """Position of status along the happy path scaled to 0-100"""
    status = OrderStatus(status)
    if status not in HAPPY_PATH:
        return 0
    index = HAPPY_PATH.index(status)
    return round(index / (len(HAPPY_PATH) - 1) * 100)


def next_recommended(status: OrderStatus) -> Optional[OrderStatus]:
    """Next happy-path step, or None at the end of the path or when cancelled"""
    status = OrderStatus(status)
    if status not in HAPPY_PATH:
        return None
    index = HAPPY_PATH.index(status)
    if index + 1 >= len(HAPPY_PATH):
        return None
    return HAPPY_PATH[index + 1]
