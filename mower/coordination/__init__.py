"""Coordination modules: outbound notifications and swarm gossip."""

from .notifier import (
    Evidence,
    HttpNotifyTransport,
    LoggingNotifyTransport,
    NotificationDispatcher,
    NotificationRequest,
    NotificationTransport,
)
from .swarm import (
    COMMANDER_ID,
    AreaClaim,
    LoopbackHub,
    LoopbackTransport,
    LossyTransport,
    SwarmCoordinator,
    SwarmMessage,
    SwarmTransport,
    UdpBroadcastTransport,
)

__all__ = [
    "Evidence",
    "HttpNotifyTransport",
    "LoggingNotifyTransport",
    "NotificationDispatcher",
    "NotificationRequest",
    "NotificationTransport",
    "COMMANDER_ID",
    "AreaClaim",
    "LoopbackHub",
    "LoopbackTransport",
    "LossyTransport",
    "SwarmCoordinator",
    "SwarmMessage",
    "SwarmTransport",
    "UdpBroadcastTransport",
]
