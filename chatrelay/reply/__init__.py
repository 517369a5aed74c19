"""Reply helpers shared across surfaces."""

from chatrelay.reply.activation import (
    ActivationCommand,
    GroupActivation,
    normalize_group_activation,
    parse_activation_command,
)
from chatrelay.reply.chunk import chunk_text
from chatrelay.reply.envelope import format_agent_envelope
from chatrelay.reply.tokens import (
    HEARTBEAT_PROMPT,
    HEARTBEAT_TOKEN,
    SILENT_REPLY_TOKEN,
    is_silent_reply_text,
    strip_heartbeat_token,
)

__all__ = [
    "ActivationCommand",
    "GroupActivation",
    "HEARTBEAT_PROMPT",
    "HEARTBEAT_TOKEN",
    "SILENT_REPLY_TOKEN",
    "chunk_text",
    "format_agent_envelope",
    "is_silent_reply_text",
    "normalize_group_activation",
    "parse_activation_command",
    "strip_heartbeat_token",
]
