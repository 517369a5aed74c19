"""Suppress inbound echoes of messages the relay itself sent."""

from collections import OrderedDict

from loguru import logger

from chatrelay.utils.helpers import elide

MAX_RECENT_MESSAGES = 100


class EchoGuard:
    """
    Bounded record of recently sent bodies.

    A hit in ``should_suppress`` consumes the entry, so each send suppresses
    at most one echo and legitimately repeated text is not muted forever.
    """

    def __init__(self, max_size: int = MAX_RECENT_MESSAGES) -> None:
        self.max_size = max_size
        self._recent: OrderedDict[str, None] = OrderedDict()

    def record_sent(self, body: str | None) -> None:
        """Remember a sent body, evicting the oldest entry past capacity."""
        if not body:
            return
        self._recent.pop(body, None)
        self._recent[body] = None
        while len(self._recent) > self.max_size:
            self._recent.popitem(last=False)

    def should_suppress(self, body: str | None) -> bool:
        """True (and forget the entry) if ``body`` was just sent by us."""
        if not body or body not in self._recent:
            return False
        del self._recent[body]
        logger.debug(f"Suppressed echo of own message: {elide(body, 80)}")
        return True

    def __contains__(self, body: object) -> bool:
        return body in self._recent

    def __len__(self) -> int:
        return len(self._recent)
