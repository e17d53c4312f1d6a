"""
Realtime fan-out to staff displays
"""

from dinein.realtime.channel import FanoutChannel, ROLE_ROOMS
from dinein.realtime.client import RealtimeClient
from dinein.realtime.events import Room
from dinein.realtime.heartbeat import LatencyTracker, ReconnectPolicy

__all__ = [
    "FanoutChannel",
    "ROLE_ROOMS",
    "RealtimeClient",
    "Room",
    "LatencyTracker",
    "ReconnectPolicy",
]
