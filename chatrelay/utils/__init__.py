"""Utility functions module."""

from chatrelay.utils.helpers import (
    elide,
    format_duration,
    format_error,
    is_self_chat_mode,
    jid_to_e164,
    new_connection_id,
    normalize_e164,
)

__all__ = [
    "elide",
    "format_duration",
    "format_error",
    "is_self_chat_mode",
    "jid_to_e164",
    "new_connection_id",
    "normalize_e164",
]
