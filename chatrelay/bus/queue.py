"""In-process queue of system events surfaced to the next agent turn."""

from collections import deque

from loguru import logger


class SystemEventQueue:
    """
    Bounded FIFO of short operator-facing notices.

    Connection changes ("gateway connected", "gateway disconnected") are
    queued here and drained into the prompt of the next agent turn.
    """

    MAX_EVENTS = 20

    def __init__(self, max_events: int = MAX_EVENTS) -> None:
        self._events: deque[str] = deque(maxlen=max_events)

    def enqueue(self, text: str) -> None:
        """Queue an event, skipping an immediate duplicate."""
        text = text.strip()
        if not text:
            return
        if self._events and self._events[-1] == text:
            return
        self._events.append(text)
        logger.debug(f"System event queued: {text}")

    def drain(self) -> list[str]:
        """Return and clear all queued events."""
        events = list(self._events)
        self._events.clear()
        return events

    def peek(self) -> list[str]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)
