"""Session persistence module."""

from chatrelay.session.store import (
    SessionSnapshot,
    SessionStore,
    group_session_key,
    is_group_address,
    resolve_session_key,
)
from chatrelay.session.transcript import TranscriptStore

__all__ = [
    "SessionSnapshot",
    "SessionStore",
    "TranscriptStore",
    "group_session_key",
    "is_group_address",
    "resolve_session_key",
]
