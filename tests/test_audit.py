"""Tests for delivery log record types."""

from __future__ import annotations

import json
from pathlib import Path

from chatrelay.observability.audit import DeliveryLog


def _load_entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_delivery_log_writes_every_record_type(tmp_path: Path) -> None:
    log = DeliveryLog(tmp_path)

    log.log_inbound("conn-1", "msg-1", "+15550002222", "+15550001111", "hello")
    log.log_delivery("conn-1", "msg-1", "+15550002222", "hi there", 12.3456, media_kind="image")
    log.log_reconnect("conn-1", status=428, reconnect_attempts=1, delay_ms=2000)
    log.log_heartbeat("+15550002222", "ok-token")

    entries = _load_entries(log._log_file())
    assert [e["type"] for e in entries] == ["inbound", "delivery", "reconnect", "heartbeat"]
    assert all("timestamp" in e for e in entries)

    inbound, delivery, reconnect, heartbeat = entries
    assert inbound["from"] == "+15550002222"
    assert inbound["chat_type"] == "direct"
    assert delivery["chars"] == 8
    assert delivery["duration_ms"] == 12.35
    assert delivery["media_kind"] == "image"
    assert reconnect["outcome"] == "retry"
    assert reconnect["delay_ms"] == 2000
    assert heartbeat["status"] == "ok-token"


def test_delivery_log_truncates_previews(tmp_path: Path) -> None:
    log = DeliveryLog(tmp_path)

    log.log_inbound("conn-1", None, "+15550002222", "+15550001111", "x" * 1000)

    entry = _load_entries(log._log_file())[0]
    assert len(entry["body"]) == 240


def test_preview_serializes_non_strings() -> None:
    assert DeliveryLog._preview({"a": 1}) == '{"a": 1}'
    assert DeliveryLog._preview(None) is None
