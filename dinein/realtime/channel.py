"""
Realtime fan-out channel

Keeps the websocket connections of staff displays grouped by room and
pushes events to them. Delivery is best-effort and at most once per
attempt: there is no outbox or replay, so clients reconcile by re-fetching
orders after reconnecting.
"""

from typing import Dict, FrozenSet, Iterable, Optional, Set
from fastapi import WebSocket
from json import dumps
import asyncio
import structlog
import uuid

from dinein.realtime.events import DomainEvent, Room

logger = structlog.get_logger(__name__)


# Rooms a connection joins when it connects, by role
ROLE_ROOMS: Dict[str, FrozenSet[Room]] = {
    "admin": frozenset({Room.ADMIN}),
    "kitchen": frozenset({Room.KITCHEN}),
    "service": frozenset({Room.SERVICE}),
}

# Rooms a role may join explicitly after connecting
JOINABLE_ROOMS: Dict[str, FrozenSet[Room]] = {
    "admin": frozenset(Room),
    "kitchen": frozenset({Room.KITCHEN}),
    "service": frozenset({Room.SERVICE, Room.KITCHEN}),
}


class FanoutChannel:
    """Room-scoped websocket broadcaster"""

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout

        # Active connections by room
        self.room_connections: Dict[Room, Set[WebSocket]] = {room: set() for room in Room}

        # WebSocket to rooms and role mappings (for cleanup and joins)
        self.connection_rooms: Dict[WebSocket, Set[Room]] = {}
        self.connection_role: Dict[WebSocket, str] = {}
        self.connection_restaurant: Dict[WebSocket, Optional[uuid.UUID]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        role: str,
        restaurant_id: Optional[uuid.UUID] = None
    ) -> Set[Room]:
        """Accept a websocket and add it to its role's rooms"""
        rooms = ROLE_ROOMS.get(role)
        if rooms is None:
            raise ValueError(f"Unknown role: {role}")

        await websocket.accept()

        self.connection_role[websocket] = role
        self.connection_restaurant[websocket] = restaurant_id
        self.connection_rooms[websocket] = set()
        for room in rooms:
            self._add(websocket, room)

        logger.info(
            "WebSocket connected",
            role=role,
            restaurant_id=str(restaurant_id) if restaurant_id else None,
            rooms=sorted(r.value for r in rooms),
        )
        return set(self.connection_rooms[websocket])

    def join(self, websocket: WebSocket, room: str) -> bool:
        """Add a connected websocket to another room its role permits"""
        role = self.connection_role.get(websocket)
        if role is None:
            return False

        try:
            target = Room(room)
        except ValueError:
            logger.warning("Join requested for unknown room", room=room, role=role)
            return False

        if target not in JOINABLE_ROOMS.get(role, frozenset()):
            logger.warning("Join not permitted", room=target.value, role=role)
            return False

        self._add(websocket, target)
        logger.info("WebSocket joined room", room=target.value, role=role)
        return True

    def disconnect(self, websocket: WebSocket):
        """Remove a websocket from every room"""
        rooms = self.connection_rooms.pop(websocket, None)
        role = self.connection_role.pop(websocket, None)
        self.connection_restaurant.pop(websocket, None)
        if rooms is None:
            logger.warning("Attempted to disconnect unknown WebSocket")
            return

        for room in rooms:
            self.room_connections[room].discard(websocket)
        logger.info("WebSocket disconnected", role=role)

    def rooms_of(self, websocket: WebSocket) -> Set[Room]:
        return set(self.connection_rooms.get(websocket, set()))

    def get_connection_count(self, room: Optional[Room] = None) -> int:
        """Number of live connections, overall or in one room"""
        if room is not None:
            return len(self.room_connections[Room(room)])
        return len(self.connection_rooms)

    async def publish(self, event: DomainEvent) -> int:
        """
        Push an event to every connection in its rooms.

        A connection in several target rooms receives the event once.
        Never raises: failures are logged and the failing connections are
        dropped. Returns the number of connections that received the event.
        """
        try:
            return await self.broadcast(event.rooms, event.to_message(), event.restaurant_id)
        except Exception as e:
            logger.error("Failed to publish event", event_type=event.name, error=str(e), exc_info=True)
            return 0

    async def broadcast(
        self,
        rooms: Iterable[Room],
        message: dict,
        restaurant_id: Optional[uuid.UUID] = None
    ) -> int:
        """Send a raw message to the union of the given rooms, within a restaurant"""
        targets: Set[WebSocket] = set()
        for room in rooms:
            targets.update(self.room_connections[Room(room)])
        if restaurant_id is not None:
            targets = {
                c for c in targets if self.connection_restaurant.get(c) == restaurant_id
            }

        if not targets:
            logger.debug("No connections for event", event_type=message.get("type"))
            return 0

        message_json = dumps(message)
        connections = list(targets)
        results = await asyncio.gather(
            *(self._send(connection, message_json) for connection in connections)
        )

        # Clean up dead connections
        delivered = 0
        for connection, sent in zip(connections, results):
            if sent:
                delivered += 1
            else:
                self.disconnect(connection)

        logger.debug(
            "Broadcasted event",
            event_type=message.get("type"),
            delivered=delivered,
            dropped=len(connections) - delivered,
        )
        return delivered

    async def _send(self, connection: WebSocket, message_json: str) -> bool:
        try:
            await asyncio.wait_for(connection.send_text(message_json), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Timed out sending to connection", timeout=self.send_timeout)
            return False
        except Exception as e:
            logger.error("Error sending to connection", error=str(e))
            return False

    def _add(self, websocket: WebSocket, room: Room):
        self.room_connections[room].add(websocket)
        self.connection_rooms[websocket].add(room)
