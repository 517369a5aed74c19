"""Shared fixtures."""

from pathlib import Path

import pytest
from loguru import logger

from chatrelay.bus.events import InboundMessage
from chatrelay.config.schema import Config


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with every path under tmp_path."""
    return Config(
        agents={"defaults": {"workspace": str(tmp_path / "workspace")}},
        session={"store": str(tmp_path / "sessions.json")},
        data_dir=str(tmp_path / "data"),
        web={"self_e164": "+15550001111", "allow_from": ["+15550002222"]},
    )


@pytest.fixture
def make_message():
    """Factory for inbound web messages with sensible defaults."""

    def _make(**overrides) -> InboundMessage:
        fields = {
            "id": "msg-1",
            "from_address": "+15550002222",
            "to_address": "+15550001111",
            "body": "hello",
            "conversation_id": "+15550002222",
            "timestamp": 1_700_000_000.0,
            "sender_e164": "+15550002222",
            "sender_name": "Alice",
            "self_e164": "+15550001111",
            "self_jid": "15550001111@s.whatsapp.net",
        }
        fields.update(overrides)
        return InboundMessage(**fields)

    return _make


@pytest.fixture
def make_group_message(make_message):
    def _make(**overrides) -> InboundMessage:
        fields = {
            "from_address": "123@g.us",
            "conversation_id": "123@g.us",
            "chat_type": "group",
            "sender_jid": "15550003333@s.whatsapp.net",
            "sender_e164": "+15550003333",
            "sender_name": "Bob",
            "group_subject": "Family",
        }
        fields.update(overrides)
        return make_message(**fields)

    return _make
