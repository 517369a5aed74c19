"""WhatsApp Web surface: connection supervision and reply delivery."""

from chatrelay.web.delivery import DeliveryReport, deliver_web_reply, send_with_retry
from chatrelay.web.echo import EchoGuard
from chatrelay.web.history import GroupHistory, GroupHistoryEntry
from chatrelay.web.mentions import GroupDecision, GroupGate, MentionConfig, is_bot_mentioned
from chatrelay.web.monitor import (
    ConnectionStatus,
    MonitorHandle,
    MonitorTuning,
    WebMonitor,
    monitor_web_provider,
)
from chatrelay.web.reconnect import ReconnectPolicy, compute_backoff, resolve_reconnect_policy

__all__ = [
    "ConnectionStatus",
    "DeliveryReport",
    "EchoGuard",
    "GroupDecision",
    "GroupGate",
    "GroupHistory",
    "GroupHistoryEntry",
    "MentionConfig",
    "MonitorHandle",
    "MonitorTuning",
    "ReconnectPolicy",
    "WebMonitor",
    "compute_backoff",
    "deliver_web_reply",
    "is_bot_mentioned",
    "monitor_web_provider",
    "resolve_reconnect_policy",
    "send_with_retry",
]
