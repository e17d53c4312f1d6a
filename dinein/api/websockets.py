"""
WebSocket endpoints for real-time updates
"""

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from typing import Optional
import structlog
import uuid

from dinein.core.clock import utcnow
from dinein.core.dependencies import get_restaurant_id, get_services, parse_claims
from dinein.realtime.events import Room
from dinein.services.container import Services

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.websocket("")
async def websocket_staff(
    websocket: WebSocket,
    token: Optional[str] = Query(None)
):
    """WebSocket connection for staff displays (kitchen, service, admin)"""
    claims = parse_claims(token)
    if claims is None:
        logger.warning("WebSocket rejected: invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    channel = websocket.app.state.services.channel
    role = claims["role"]
    restaurant_id = claims["restaurant_id"]

    try:
        rooms = await channel.connect(websocket, role, restaurant_id)

        # Send connection confirmation
        await websocket.send_json({
            "type": "connection_confirmed",
            "role": role,
            "restaurant_id": str(restaurant_id),
            "rooms": sorted(r.value for r in rooms),
        })

        # Listen for incoming messages (pings and room joins)
        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                channel.disconnect(websocket)
                logger.info("Staff WebSocket disconnected", role=role)
                break

            message_type = data.get("type")
            if message_type == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "sent_at": data.get("sent_at"),
                    "timestamp": utcnow().isoformat(),
                })
            elif message_type == "join":
                room = data.get("room")
                joined = channel.join(websocket, room)
                await websocket.send_json({
                    "type": "joined" if joined else "join_rejected",
                    "room": room,
                    "rooms": sorted(r.value for r in channel.rooms_of(websocket)),
                })
            else:
                logger.debug("Ignored WebSocket message", role=role, message_type=message_type)

    except Exception as e:
        logger.error("Error in staff WebSocket", error=str(e), exc_info=True)
        channel.disconnect(websocket)


@router.get("/connections")
async def get_connection_stats(
    restaurant_id: uuid.UUID = Depends(get_restaurant_id),
    services: Services = Depends(get_services)
):
    """Get WebSocket connection statistics"""
    channel = services.channel
    return {
        "total": channel.get_connection_count(),
        "rooms": {room.value: channel.get_connection_count(room) for room in Room},
    }
