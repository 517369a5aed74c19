"""Heartbeat module."""

from chatrelay.heartbeat.service import (
    HeartbeatEvent,
    HeartbeatRecipients,
    HeartbeatService,
    heartbeat_tick,
    resolve_heartbeat_recipients,
    run_web_heartbeat_once,
)

__all__ = [
    "HeartbeatEvent",
    "HeartbeatRecipients",
    "HeartbeatService",
    "heartbeat_tick",
    "resolve_heartbeat_recipients",
    "run_web_heartbeat_once",
]
