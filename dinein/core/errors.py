"""
Domain error taxonomy

Errors are returned inside a Result by core operations. They subclass
Exception so a service can raise one inside a transaction to force a
rollback and convert it to a failed Result at its boundary.
"""

from enum import Enum
from typing import Any, Dict, Iterable, Optional
import uuid


class ErrorKind(str, Enum):
    """Category used by callers to decide on retries and response codes"""
    VALIDATION = "validation"           # Client-fixable, never retried
    CONFLICT = "conflict"               # State conflict, caller may retry the whole operation
    NOT_FOUND = "not_found"
    INFRASTRUCTURE = "infrastructure"   # Store or transport unavailable


class DomainError(Exception):
    """Base class for expected business failures"""

    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "domain_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a response-friendly dictionary"""
        data = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.details:
            data["details"] = {
                key: _jsonable(value) for key, value in self.details.items()
            }
        return data


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (set, frozenset, tuple, list)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, Enum):
        return value.value
    return value


# Validation errors

class InvalidTransition(DomainError):
    code = "invalid_transition"

    def __init__(self, current: Any, target: Any, allowed: Iterable[Any]):
        self.current = current
        self.target = target
        self.allowed = frozenset(allowed)
        if current == target:
            message = f"Order is already in status '{_jsonable(current)}'"
        else:
            allowed_text = ", ".join(_jsonable(self.allowed)) or "none"
            message = (
                f"Cannot change status from '{_jsonable(current)}' to "
                f"'{_jsonable(target)}'. Allowed: {allowed_text}"
            )
        super().__init__(message, current=current, target=target, allowed=self.allowed)


class CartEmpty(DomainError):
    code = "cart_empty"

    def __init__(self):
        super().__init__("The order must contain at least one item")


class InvalidAmount(DomainError):
    code = "invalid_amount"


class ProductUnavailable(DomainError):
    code = "product_unavailable"

    def __init__(self, product_id: uuid.UUID):
        super().__init__(f"Product {product_id} is not available", product_id=product_id)


class MissingSessionBinding(DomainError):
    code = "missing_session_binding"

    def __init__(self):
        super().__init__("Dine-in orders require a session code or a table id")


# Conflict errors

class TableHasActiveSession(DomainError):
    kind = ErrorKind.CONFLICT
    code = "table_has_active_session"

    def __init__(self, table_id: uuid.UUID):
        super().__init__(
            "Cannot delete a table with an active session", table_id=table_id
        )


class TableNumberTaken(DomainError):
    kind = ErrorKind.CONFLICT
    code = "table_number_taken"

    def __init__(self, number: int):
        super().__init__(f"Table number {number} already exists", number=number)


class OrderNumberConflict(DomainError):
    kind = ErrorKind.CONFLICT
    code = "order_number_conflict"

    def __init__(self, order_number: str):
        super().__init__(
            f"Order number {order_number} was already allocated", order_number=order_number
        )


class OrderModified(DomainError):
    kind = ErrorKind.CONFLICT
    code = "order_modified"

    def __init__(self, order_id: uuid.UUID, version: Optional[int] = None):
        super().__init__(
            f"Order {order_id} was modified by another user. Refresh and try again.",
            order_id=order_id,
            version=version,
        )


class SessionClosed(DomainError):
    kind = ErrorKind.CONFLICT
    code = "session_closed"

    def __init__(self, session_id: uuid.UUID):
        super().__init__(f"Session {session_id} is not active", session_id=session_id)


class SessionHasActiveOrders(DomainError):
    kind = ErrorKind.CONFLICT
    code = "session_has_active_orders"

    def __init__(self, session_id: uuid.UUID, order_ids: Iterable[uuid.UUID]):
        super().__init__(
            f"Session {session_id} still has orders in progress",
            session_id=session_id,
            order_ids=list(order_ids),
        )


# Not-found errors

class _NotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    entity = "Entity"

    def __init__(self, identifier: Any):
        super().__init__(f"{self.entity} {identifier} not found", identifier=identifier)


class SessionNotFound(_NotFound):
    code = "session_not_found"
    entity = "Session"


class TableNotFound(_NotFound):
    code = "table_not_found"
    entity = "Table"


class ProductNotFound(_NotFound):
    code = "product_not_found"
    entity = "Product"


class OrderNotFound(_NotFound):
    code = "order_not_found"
    entity = "Order"


class RestaurantNotFound(_NotFound):
    code = "restaurant_not_found"
    entity = "Restaurant"


# Infrastructure errors

class StoreUnavailable(DomainError):
    kind = ErrorKind.INFRASTRUCTURE
    code = "store_unavailable"

    def __init__(self, operation: Optional[str] = None):
        super().__init__("The data store is unavailable", operation=operation)
