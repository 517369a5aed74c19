"""Message bus module."""

from chatrelay.bus.events import (
    DisconnectReason,
    InboundMessage,
    ReplyEnvelope,
    ReplyHooks,
    ReplyPayload,
    ReplyResolver,
    ReplyTransport,
)
from chatrelay.bus.queue import SystemEventQueue

__all__ = [
    "DisconnectReason",
    "InboundMessage",
    "ReplyEnvelope",
    "ReplyHooks",
    "ReplyPayload",
    "ReplyResolver",
    "ReplyTransport",
    "SystemEventQueue",
]
