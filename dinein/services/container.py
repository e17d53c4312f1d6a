"""
Service wiring

The fan-out channel is created once per process and handed to every
service that publishes events.
"""

from dataclasses import dataclass
from typing import Optional

from dinein.core.clock import Clock, utcnow
from dinein.core.config import Settings
from dinein.core.database import SessionFactory
from dinein.realtime.channel import FanoutChannel
from dinein.services.order_orchestrator import OrderOrchestrator
from dinein.services.reaper import InactivityReaper
from dinein.services.session_registry import SessionRegistry


@dataclass
class Services:
    settings: Settings
    session_factory: SessionFactory
    channel: FanoutChannel
    registry: SessionRegistry
    orchestrator: OrderOrchestrator
    reaper: InactivityReaper


def build_services(
    settings: Settings,
    session_factory: SessionFactory,
    channel: Optional[FanoutChannel] = None,
    clock: Clock = utcnow
) -> Services:
    """Construct the core services around one session factory and channel"""
    channel = channel or FanoutChannel(send_timeout=settings.WS_SEND_TIMEOUT_SECONDS)
    registry = SessionRegistry(session_factory, channel, settings=settings, clock=clock)
    orchestrator = OrderOrchestrator(session_factory, registry, channel, settings=settings, clock=clock)
    reaper = InactivityReaper(
        session_factory,
        registry,
        interval_seconds=settings.REAPER_INTERVAL_SECONDS,
        inactivity_minutes=settings.SESSION_INACTIVITY_MINUTES,
        clock=clock,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        channel=channel,
        registry=registry,
        orchestrator=orchestrator,
        reaper=reaper,
    )
