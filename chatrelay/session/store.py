"""JSON session store shared by the surfaces, heartbeat and resolver."""

import json
import os
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from chatrelay.reply.activation import GroupActivation, normalize_group_activation


def is_group_address(address: str) -> bool:
    """Group conversations end in ``@g.us`` or carry a ``group:`` prefix."""
    value = address.strip()
    return value.startswith("group:") or value.endswith("@g.us") or ":group:" in value


def group_session_key(conversation_id: str) -> str:
    """Session key under which a group's settings are stored."""
    if conversation_id.startswith("group:") or conversation_id.startswith("whatsapp:group:"):
        return conversation_id
    return f"whatsapp:group:{conversation_id}"


def resolve_session_key(scope: str, from_address: str, main_key: str = "main") -> str:
    """
    Map a sender address to its session key.

    Direct chats share the main session; groups are isolated per group.
    With ``global`` scope everything lands in one session.
    """
    if scope == "global":
        return "global"
    if is_group_address(from_address):
        return group_session_key(from_address.removeprefix("whatsapp:"))
    return main_key.strip() or "main"


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time view of one session entry."""

    key: str
    entry: dict[str, Any] | None
    fresh: bool


class SessionStore:
    """
    Session metadata persisted as a single JSON object keyed by session key.

    Each entry may carry ``session_id``, ``updated_at`` (epoch seconds),
    ``last_channel``, ``last_to`` and ``group_activation``. Writes are
    read-modify-write under a lock and replace the file atomically; across
    processes the last writer wins.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def load(self) -> dict[str, dict[str, Any]]:
        """Read the whole store. A missing or corrupt file reads as empty."""
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read session store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict)}

    def save(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> dict[str, Any] | None:
        return self.load().get(key)

    def update(self, key: str, **fields: Any) -> dict[str, Any]:
        """
        Merge fields into an entry, creating it if needed.

        Args:
            key: Session key.
            **fields: Values to set. ``updated_at`` defaults to now.

        Returns:
            The stored entry.
        """
        with self._lock:
            data = self.load()
            entry = dict(data.get(key) or {"session_id": uuid.uuid4().hex})
            entry.update(fields)
            entry.setdefault("updated_at", time.time())
            data[key] = entry
            self.save(data)
            return entry

    def update_last_route(self, session_key: str, channel: str, to: str) -> dict[str, Any]:
        """Remember where the last direct message for a session came from."""
        return self.update(session_key, last_channel=channel, last_to=to, updated_at=time.time())

    def get_group_activation(self, key: str) -> GroupActivation | None:
        entry = self.get(key)
        if not entry:
            return None
        return normalize_group_activation(entry.get("group_activation"))

    def set_group_activation(self, key: str, mode: GroupActivation) -> None:
        self.update(key, group_activation=mode, updated_at=time.time())
        logger.info(f"Group activation for {key} set to {mode}")

    def touch(self, key: str, updated_at: float | None) -> None:
        """Restore or bump ``updated_at`` without changing anything else."""
        with self._lock:
            data = self.load()
            entry = data.get(key)
            if entry is None:
                return
            entry["updated_at"] = updated_at if updated_at is not None else time.time()
            self.save(data)

    def snapshot(self, key: str, idle_minutes: int) -> SessionSnapshot:
        """Return an entry and whether it is younger than ``idle_minutes``."""
        entry = self.get(key)
        fresh = False
        if entry and entry.get("updated_at") is not None:
            age = time.time() - float(entry["updated_at"])
            fresh = age <= idle_minutes * 60
        return SessionSnapshot(key=key, entry=entry, fresh=fresh)

    def recipients(self, channel: str = "whatsapp") -> list[dict[str, Any]]:
        """
        Last direct routes for a channel, most recent first.

        Group and cron sessions are excluded.
        """
        rows = []
        for key, entry in self.load().items():
            if key.startswith("group:") or ":group:" in key or key.startswith("cron:"):
                continue
            if entry.get("last_channel") != channel or not entry.get("last_to"):
                continue
            rows.append({"key": key, "to": entry["last_to"], "updated_at": entry.get("updated_at") or 0})
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return rows
