"""
Realtime client for staff displays

Connects to the fan-out websocket, joins rooms, keeps a ping loop for
latency tracking and reconnects forever with capped exponential backoff.
The connection factory is injected: any awaitable returning an object with
async send(str), recv() -> str and close() works (e.g. websockets.connect).
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from json import dumps, loads
import asyncio
import inspect
import time
import structlog

from dinein.core.config import Settings
from dinein.realtime.heartbeat import LatencyTracker, ReconnectPolicy

logger = structlog.get_logger(__name__)

STATE_CONNECTED = "connected"
STATE_RECONNECTING = "reconnecting"
STATE_STOPPED = "stopped"


class RealtimeClient:
    """Reconnecting websocket client"""

    def __init__(
        self,
        url: str,
        connect: Callable[[str], Awaitable[Any]],
        rooms: Iterable[str] = (),
        on_event: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_state: Optional[Callable[[str], Any]] = None,
        ping_interval: float = 25.0,
        policy: Optional[ReconnectPolicy] = None,
        latency: Optional[LatencyTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.url = url
        self.rooms = list(rooms)
        self.ping_interval = ping_interval
        self.policy = policy or ReconnectPolicy()
        self.latency = latency or LatencyTracker()
        self.state: Optional[str] = None

        self._connect = connect
        self._on_event = on_event
        self._on_state = on_state
        self._sleep = sleep
        self._clock = clock
        self._connection = None
        self._stopping = False

    @classmethod
    def from_settings(
        cls,
        url: str,
        connect: Callable[[str], Awaitable[Any]],
        settings: Settings,
        **kwargs: Any
    ) -> "RealtimeClient":
        """Client with heartbeat and backoff tuned by configuration"""
        return cls(
            url,
            connect,
            ping_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
            policy=ReconnectPolicy(
                base_delay_ms=settings.RECONNECT_BASE_DELAY_MS,
                max_delay_ms=settings.RECONNECT_MAX_DELAY_MS,
                jitter_ms=settings.RECONNECT_JITTER_MS,
            ),
            latency=LatencyTracker(
                window=settings.HEARTBEAT_WINDOW,
                unhealthy_ms=settings.HEARTBEAT_UNHEALTHY_MS,
            ),
            **kwargs
        )

    async def run(self):
        """Connect and serve until stop() is called"""
        self._stopping = False
        while not self._stopping:
            try:
                connection = await self._connect(self.url)
            except Exception as e:
                logger.warning("Realtime connect failed", url=self.url, error=str(e))
                await self._backoff()
                continue

            self._connection = connection
            self.policy.reset()
            await self._set_state(STATE_CONNECTED)

            try:
                await self._serve(connection)
            except Exception as e:
                if not self._stopping:
                    logger.warning("Realtime connection lost", url=self.url, error=str(e))
            finally:
                self._connection = None
                await self._close(connection)

            if not self._stopping:
                await self._backoff()

        await self._set_state(STATE_STOPPED)

    async def stop(self):
        """Stop reconnecting and close the current connection"""
        self._stopping = True
        if self._connection is not None:
            await self._close(self._connection)

    async def send(self, message: Dict[str, Any]):
        if self._connection is None:
            raise ConnectionError("Realtime client is not connected")
        await self._connection.send(dumps(message))

    async def handle_message(self, raw: str):
        """Dispatch one message received from the server"""
        message = loads(raw)
        message_type = message.get("type")

        if message_type == "pong":
            sent_at = message.get("sent_at")
            if sent_at is not None:
                self.latency.record(max(0.0, self._now_ms() - float(sent_at)))
            return

        if message_type == "connection_confirmed":
            logger.debug("Realtime connection confirmed", rooms=message.get("rooms"))
            return

        if self._on_event is not None:
            result = self._on_event(message)
            if inspect.isawaitable(result):
                await result

    async def _serve(self, connection):
        for room in self.rooms:
            await connection.send(dumps({"type": "join", "room": room}))

        ping_task = asyncio.create_task(self._ping_loop(connection))
        try:
            while not self._stopping:
                raw = await connection.recv()
                await self.handle_message(raw)
        finally:
            ping_task.cancel()
            try:
                await ping_task
            except asyncio.CancelledError:
                pass

    async def _ping_loop(self, connection):
        while True:
            await connection.send(dumps({"type": "ping", "sent_at": self._now_ms()}))
            await asyncio.sleep(self.ping_interval)

    async def _backoff(self):
        await self._set_state(STATE_RECONNECTING)
        delay = self.policy.next_delay()
        logger.info("Reconnecting", url=self.url, attempt=self.policy.attempt, delay=delay)
        await self._sleep(delay)

    async def _set_state(self, state: str):
        if state == self.state:
            return
        self.state = state
        if self._on_state is not None:
            result = self._on_state(state)
            if inspect.isawaitable(result):
                await result

    async def _close(self, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.debug("Error closing realtime connection", error=str(e))

    def _now_ms(self) -> float:
        return self._clock() * 1000.0
