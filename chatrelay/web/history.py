"""Per-group rolling history used to give the agent catch-up context."""

from collections import deque
from dataclasses import dataclass

from chatrelay.reply.envelope import format_agent_envelope

DEFAULT_GROUP_HISTORY_LIMIT = 50

CATCH_UP_HEADER = "[Chat messages since your last reply - for context]"
CURRENT_MESSAGE_HEADER = "[Current message - respond to this]"


@dataclass(frozen=True)
class GroupHistoryEntry:
    sender: str
    body: str
    timestamp: float | None = None


class GroupHistory:
    """
    Bounded FIFO buffers of group messages, one per conversation.

    Also keeps a roster of member display names seen in each group.
    """

    def __init__(self, limit: int = DEFAULT_GROUP_HISTORY_LIMIT) -> None:
        self.limit = max(1, limit)
        self._buffers: dict[str, deque[GroupHistoryEntry]] = {}
        self._rosters: dict[str, dict[str, str]] = {}

    def append(self, conversation_id: str, entry: GroupHistoryEntry) -> None:
        buffer = self._buffers.get(conversation_id)
        if buffer is None:
            buffer = deque(maxlen=self.limit)
            self._buffers[conversation_id] = buffer
        buffer.append(entry)

    def entries(self, conversation_id: str) -> list[GroupHistoryEntry]:
        return list(self._buffers.get(conversation_id, ()))

    def prior_entries(self, conversation_id: str, exclude_latest: bool) -> list[GroupHistoryEntry]:
        """
        Entries before the current message.

        Args:
            conversation_id: Group conversation.
            exclude_latest: Drop the newest entry (the current message was
                recorded before the reply was generated).
        """
        entries = self.entries(conversation_id)
        if exclude_latest and entries:
            return entries[:-1]
        return entries

    def clear(self, conversation_id: str) -> None:
        self._buffers.pop(conversation_id, None)

    def note_member(self, conversation_id: str, e164: str | None, name: str | None) -> None:
        if not e164 or not name:
            return
        self._rosters.setdefault(conversation_id, {})[e164] = name

    def roster(self, conversation_id: str) -> dict[str, str]:
        return dict(self._rosters.get(conversation_id, {}))


def format_group_members(
    participants: list[str] | tuple[str, ...] | None,
    roster: dict[str, str] | None,
    fallback_e164: str | None = None,
) -> str | None:
    """Render ``Name (+E164), +E164`` for the envelope, or None if unknown."""
    ordered: list[str] = []
    seen: set[str] = set()
    for e164 in list(participants or []) + list((roster or {}).keys()):
        if e164 and e164 not in seen:
            seen.add(e164)
            ordered.append(e164)
    if not ordered and fallback_e164:
        ordered.append(fallback_e164)
    if not ordered:
        return None
    names = roster or {}
    return ", ".join(f"{names[e164]} ({e164})" if names.get(e164) else e164 for e164 in ordered)


def render_catch_up(
    history: list[GroupHistoryEntry],
    current_line: str,
    conversation_id: str,
    surface: str = "WhatsApp",
) -> str:
    """Prefix the current message with buffered context lines, if any."""
    if not history:
        return current_line
    lines = "\n".join(
        format_agent_envelope(
            surface=surface,
            from_=conversation_id,
            timestamp=entry.timestamp,
            body=f"{entry.sender}: {entry.body}",
        )
        for entry in history
    )
    return f"{CATCH_UP_HEADER}\n{lines}\n\n{CURRENT_MESSAGE_HEADER}\n{current_line}"
