"""Per-session chat transcripts used by the LLM resolver."""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from chatrelay.utils.helpers import elide


class TranscriptStore:
    """
    Conversation transcripts with JSONL persistence.

    Each session is stored as a JSONL file named after its session key.
    """

    MAX_HISTORY = 50

    def __init__(self, transcripts_dir: Path, max_history: int = MAX_HISTORY) -> None:
        self.transcripts_dir = transcripts_dir
        self.transcripts_dir.mkdir(parents=True, exist_ok=True)
        self.max_history = max_history
        self._cache: dict[str, list[dict[str, Any]]] = {}

    def _path(self, session_key: str) -> Path:
        safe_key = session_key.replace(":", "_").replace("/", "_")
        return self.transcripts_dir / f"{safe_key}.jsonl"

    def get_history(self, session_key: str) -> list[dict[str, Any]]:
        """
        Get recent messages for a session.

        Args:
            session_key: Session key as produced by ``resolve_session_key``.

        Returns:
            Up to ``max_history`` role/content dicts, oldest first.
        """
        if session_key not in self._cache:
            self._cache[session_key] = self._read(session_key)
        return self._cache[session_key][-self.max_history :]

    def _read(self, session_key: str) -> list[dict[str, Any]]:
        path = self._path(session_key)
        if not path.exists():
            return []
        messages: list[dict[str, Any]] = []
        try:
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    messages.append(json.loads(line))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load transcript {session_key}: {e}")
            return []
        return messages

    def save_turn(self, session_key: str, user_message: str, assistant_response: str) -> None:
        """Append a user/assistant exchange."""
        turn = [
            {"role": "user", "content": user_message},
            {"role": "assistant", "content": assistant_response},
        ]
        self._cache.setdefault(session_key, self._read(session_key)).extend(turn)
        with open(self._path(session_key), "a", encoding="utf-8") as f:
            for msg in turn:
                f.write(json.dumps(msg, ensure_ascii=False) + "\n")
        logger.debug(f"Transcript {session_key}: saved turn ({elide(assistant_response, 60)})")

    def clear(self, session_key: str) -> None:
        """Clear a session's transcript."""
        self._cache.pop(session_key, None)
        path = self._path(session_key)
        if path.exists():
            path.unlink()
        logger.debug(f"Transcript cleared: {session_key}")
