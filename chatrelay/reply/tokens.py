"""Control tokens recognized in resolver output."""

from dataclasses import dataclass
from typing import Literal

HEARTBEAT_TOKEN = "HEARTBEAT_OK"
SILENT_REPLY_TOKEN = "NO_REPLY"
DEFAULT_HEARTBEAT_ACK_MAX_CHARS = 30

HEARTBEAT_PROMPT = (
    "Read HEARTBEAT.md if it exists in your workspace and follow it strictly. "
    "Do not infer or repeat old tasks from prior chats. "
    f"If nothing needs attention, reply {HEARTBEAT_TOKEN}."
)


@dataclass(frozen=True)
class StrippedReply:
    """Result of removing the heartbeat token from reply text."""

    should_skip: bool
    text: str
    did_strip: bool


def strip_heartbeat_token(
    raw: str | None,
    mode: Literal["message", "heartbeat"] = "message",
    max_ack_chars: int = DEFAULT_HEARTBEAT_ACK_MAX_CHARS,
) -> StrippedReply:
    """
    Remove the heartbeat acknowledgment token from the edges of a reply.

    Args:
        raw: Reply text as produced by the resolver.
        mode: In ``heartbeat`` mode a short acknowledgment left after
            stripping (up to ``max_ack_chars``) is treated as nothing to send.
        max_ack_chars: Longest leftover still counted as an acknowledgment.

    Returns:
        ``should_skip`` is set when nothing deliverable remains.
    """
    if raw is None:
        return StrippedReply(should_skip=True, text="", did_strip=False)
    trimmed = raw.strip()
    if not trimmed:
        return StrippedReply(should_skip=True, text="", did_strip=False)
    if HEARTBEAT_TOKEN not in trimmed:
        return StrippedReply(should_skip=False, text=trimmed, did_strip=False)

    text = trimmed
    did_strip = False
    changed = True
    while changed and text:
        changed = False
        if text.startswith(HEARTBEAT_TOKEN):
            text = text[len(HEARTBEAT_TOKEN):].lstrip()
            did_strip = changed = True
        if text.endswith(HEARTBEAT_TOKEN):
            text = text[: -len(HEARTBEAT_TOKEN)].rstrip()
            did_strip = changed = True

    if not did_strip:
        return StrippedReply(should_skip=False, text=trimmed, did_strip=False)
    if not text:
        return StrippedReply(should_skip=True, text="", did_strip=True)
    if mode == "heartbeat" and len(text) <= max(0, max_ack_chars):
        return StrippedReply(should_skip=True, text="", did_strip=True)
    return StrippedReply(should_skip=False, text=text, did_strip=True)


def is_silent_reply_text(text: str | None) -> bool:
    """True when the resolver explicitly chose to say nothing."""
    return bool(text) and text.strip() == SILENT_REPLY_TOKEN
