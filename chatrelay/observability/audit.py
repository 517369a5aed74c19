"""Structured JSONL records of inbound turns, deliveries and reconnects."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger


class DeliveryLog:
    """
    Append-only daily JSONL log of relay activity.

    Records inbound turns, outbound deliveries, connection lifecycle changes
    and heartbeat runs, for debugging and analysis.
    """

    def __init__(self, data_dir: Path) -> None:
        self.log_dir = Path(data_dir).expanduser() / "audit"
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _log_file(self) -> Path:
        """Get today's log file."""
        today = datetime.now().strftime("%Y-%m-%d")
        return self.log_dir / f"{today}.jsonl"

    def _write(self, entry: dict[str, Any]) -> None:
        entry["timestamp"] = datetime.now().isoformat()
        try:
            with open(self._log_file(), "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write delivery log entry: {e}")

    @staticmethod
    def _preview(value: Any, limit: int = 240) -> str | None:
        """Serialize a value for compact logging."""
        if value is None:
            return None
        if isinstance(value, str):
            text = value
        else:
            try:
                text = json.dumps(value, ensure_ascii=False)
            except TypeError:
                text = str(value)
        return text[:limit]

    def log_inbound(
        self,
        connection_id: str,
        correlation_id: str | None,
        from_address: str,
        to_address: str,
        body: str,
        media_type: str | None = None,
        chat_type: str = "direct",
    ) -> None:
        """Log an inbound message accepted for processing."""
        self._write(
            {
                "type": "inbound",
                "connection_id": connection_id,
                "correlation_id": correlation_id,
                "from": from_address,
                "to": to_address,
                "chat_type": chat_type,
                "body": self._preview(body),
                "media_type": media_type,
            }
        )

    def log_delivery(
        self,
        connection_id: str | None,
        correlation_id: str | None,
        to: str,
        text: str | None,
        duration_ms: float,
        media_url: str | None = None,
        media_kind: str | None = None,
        media_size_bytes: int | None = None,
    ) -> None:
        """Log one successful outbound send (a text chunk or a media item)."""
        self._write(
            {
                "type": "delivery",
                "connection_id": connection_id,
                "correlation_id": correlation_id,
                "to": to,
                "text": self._preview(text),
                "chars": len(text or ""),
                "media_url": media_url,
                "media_kind": media_kind,
                "media_size_bytes": media_size_bytes,
                "duration_ms": round(duration_ms, 2),
            }
        )

    def log_reconnect(
        self,
        connection_id: str,
        status: int | None,
        reconnect_attempts: int,
        delay_ms: int | None,
        error: str | None = None,
        logged_out: bool = False,
        outcome: str = "retry",
    ) -> None:
        """Log a connection close and what the supervisor does next."""
        self._write(
            {
                "type": "reconnect",
                "connection_id": connection_id,
                "status": status,
                "reconnect_attempts": reconnect_attempts,
                "delay_ms": delay_ms,
                "error": self._preview(error),
                "logged_out": logged_out,
                "outcome": outcome,
            }
        )
        logger.debug(f"Delivery log: reconnect {outcome} (status {status})")

    def log_heartbeat(self, to: str, status: str, preview: str | None = None, reason: str | None = None) -> None:
        """Log a heartbeat run result."""
        self._write(
            {
                "type": "heartbeat",
                "to": to,
                "status": status,
                "preview": self._preview(preview),
                "reason": reason,
            }
        )
