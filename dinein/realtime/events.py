"""
Realtime events

Each event knows its wire name, the rooms it is routed to and its payload.
Payloads are JSON-safe dictionaries with snake_case keys.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import uuid

from dinein.core.clock import utcnow


class Room(str, Enum):
    """Audience rooms on the realtime channel"""
    KITCHEN = "kitchen"
    SERVICE = "service"
    ADMIN = "admin"


ORDER_ROOMS = frozenset({Room.KITCHEN, Room.SERVICE, Room.ADMIN})
SESSION_OPEN_ROOMS = frozenset({Room.ADMIN})
SESSION_CLOSE_ROOMS = frozenset({Room.ADMIN, Room.SERVICE})
TABLE_ROOMS = frozenset({Room.ADMIN, Room.SERVICE})


class DomainEvent:
    """Base class for events pushed to connected clients"""

    name: str = "event"
    rooms: FrozenSet[Room] = frozenset()

    def __init__(
        self,
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None,
        occurred_at: Optional[datetime] = None
    ):
        # Only connections of this restaurant receive the event
        self.restaurant_id = restaurant_id
        self.event_id = event_id or uuid.uuid4()
        self.occurred_at = occurred_at or utcnow()

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_message(self) -> Dict[str, Any]:
        """Wire envelope sent to clients"""
        return {
            "type": self.name,
            "data": self.payload(),
            "timestamp": self.occurred_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} {self.event_id}>"


class OrderCreated(DomainEvent):
    """Event fired when an order is placed"""

    name = "order:new"
    rooms = ORDER_ROOMS

    def __init__(
        self,
        order: Dict[str, Any],
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(restaurant_id, event_id)
        # Serialized order including items and table number
        self.order = order

    def payload(self) -> Dict[str, Any]:
        return dict(self.order)


class OrderUpdated(DomainEvent):
    """Event fired when an order changes"""

    name = "order:update"
    rooms = ORDER_ROOMS

    def __init__(
        self,
        order_id: uuid.UUID,
        order_number: str,
        status: str,
        previous_status: Optional[str] = None,
        table_number: Optional[int] = None,
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(restaurant_id, event_id)
        self.order_id = order_id
        self.order_number = order_number
        self.status = status
        self.previous_status = previous_status
        self.table_number = table_number

    def payload(self) -> Dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "order_number": self.order_number,
            "status": _value(self.status),
            "previous_status": _value(self.previous_status),
            "table_number": self.table_number,
        }


class OrderStatusChanged(OrderUpdated):
    """Event fired when an order moves to a new status"""

    name = "order:statusChange"


class SessionOpened(DomainEvent):
    """Event fired when a table session is created"""

    name = "session:new"
    rooms = SESSION_OPEN_ROOMS

    def __init__(
        self,
        session_id: uuid.UUID,
        session_code: str,
        table_id: uuid.UUID,
        table_number: int,
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(restaurant_id, event_id)
        self.session_id = session_id
        self.session_code = session_code
        self.table_id = table_id
        self.table_number = table_number

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": str(self.session_id),
            "session_code": self.session_code,
            "table_id": str(self.table_id),
            "table_number": self.table_number,
        }


class SessionEnded(DomainEvent):
    """Event fired when a table session is closed"""

    name = "session:close"
    rooms = SESSION_CLOSE_ROOMS

    def __init__(
        self,
        session_id: uuid.UUID,
        session_code: str,
        table_id: uuid.UUID,
        table_number: Optional[int],
        reason: str,
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(restaurant_id, event_id)
        self.session_id = session_id
        self.session_code = session_code
        self.table_id = table_id
        self.table_number = table_number
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": str(self.session_id),
            "session_code": self.session_code,
            "table_id": str(self.table_id),
            "table_number": self.table_number,
            "reason": _value(self.reason),
        }


class _TableEvent(DomainEvent):
    rooms = TABLE_ROOMS

    def __init__(
        self,
        table_id: uuid.UUID,
        number: Optional[int],
        available: Optional[bool],
        restaurant_id: Optional[uuid.UUID] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(restaurant_id, event_id)
        self.table_id = table_id
        self.number = number
        self.available = available

    def payload(self) -> Dict[str, Any]:
        return {
            "table_id": str(self.table_id),
            "number": self.number,
            "available": self.available,
        }


class TableCreated(_TableEvent):
    """Event fired when a table is added"""

    name = "table:new"


class TableUpdated(_TableEvent):
    """Event fired when a table's availability changes"""

    name = "table:update"


class TableDeleted(_TableEvent):
    """Event fired when a table is removed"""

    name = "table:delete"


def _value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value
