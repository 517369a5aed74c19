"""Tests for heartbeat recipients, single runs and the service loop."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.bus.events import ReplyPayload
from chatrelay.heartbeat.service import (
    HeartbeatService,
    heartbeat_tick,
    resolve_heartbeat_recipients,
    run_web_heartbeat_once,
)
from chatrelay.observability.audit import DeliveryLog
from chatrelay.reply.tokens import HEARTBEAT_PROMPT
from chatrelay.session.store import SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def sender():
    return AsyncMock(return_value="out-1")


def _heartbeat_records(tmp_path):
    return [
        json.loads(line)
        for path in (tmp_path / "data" / "audit").glob("*.jsonl")
        for line in path.read_text().splitlines()
        if json.loads(line)["type"] == "heartbeat"
    ]


class TestRecipients:
    def test_explicit_to_wins(self, config, store):
        targets = resolve_heartbeat_recipients(config, store, to="15557778888")

        assert targets.recipients == ["+15557778888"]
        assert targets.source == "flag"

    def test_falls_back_to_allow_from(self, config, store):
        targets = resolve_heartbeat_recipients(config, store)

        assert targets.recipients == ["+15550002222"]
        assert targets.source == "allowFrom"

    def test_single_session(self, config, store):
        store.update("main", last_channel="whatsapp", last_to="+15550005555")

        targets = resolve_heartbeat_recipients(config, store)

        assert targets.recipients == ["+15550005555"]
        assert targets.source == "session-single"

    def test_multiple_sessions_are_ambiguous(self, config, store):
        store.update("main", last_channel="whatsapp", last_to="+15550005555", updated_at=200.0)
        store.update("other", last_channel="whatsapp", last_to="+15550006666", updated_at=100.0)
        store.update("unknown", last_channel="whatsapp", last_to="+15550007777")
        store.update("whatsapp:group:123@g.us", last_channel="whatsapp", last_to="123@g.us")

        targets = resolve_heartbeat_recipients(config, store)

        assert targets.recipients == ["+15550005555", "+15550006666"]
        assert targets.source == "session-ambiguous"

    def test_all_merges_sessions_and_allow_from(self, config, store):
        config.web.allow_from = ["*", "+15550002222", "+15550005555"]
        store.update("main", last_channel="whatsapp", last_to="+15550005555")

        targets = resolve_heartbeat_recipients(config, store, all_recipients=True)

        assert targets.recipients == ["+15550005555", "+15550002222"]
        assert targets.source == "all"

    def test_global_scope_ignores_sessions(self, config, store):
        config.session.scope = "global"
        store.update("main", last_channel="whatsapp", last_to="+15550005555")

        targets = resolve_heartbeat_recipients(config, store)

        assert targets.source == "allowFrom"


@pytest.mark.asyncio
async def test_alert_is_sent(config, store, sender, tmp_path):
    resolver = AsyncMock(return_value=ReplyPayload(text="Your build failed"))
    delivery_log = DeliveryLog(tmp_path / "data")

    event = await run_web_heartbeat_once(
        config,
        "+15550002222",
        reply_resolver=resolver,
        sender=sender,
        session_store=store,
        delivery_log=delivery_log,
    )

    assert event.status == "sent"
    assert event.preview == "Your build failed"
    sender.assert_awaited_once_with("+15550002222", "Your build failed")
    envelope, hooks, _ = resolver.await_args.args
    assert envelope.body == HEARTBEAT_PROMPT
    assert hooks.is_heartbeat is True
    assert [r["status"] for r in _heartbeat_records(tmp_path)] == ["sent"]


@pytest.mark.asyncio
async def test_empty_reply_is_ok_empty(config, sender):
    event = await run_web_heartbeat_once(
        config, "+15550002222", reply_resolver=AsyncMock(return_value=None), sender=sender
    )

    assert event.status == "ok-empty"
    sender.assert_not_awaited()


@pytest.mark.asyncio
async def test_token_reply_restores_updated_at(config, store, sender):
    store.update("main", session_id="s-1", updated_at=100.0)

    async def resolver(envelope, hooks, cfg):
        store.update("main", updated_at=999.0)
        return ReplyPayload(text="HEARTBEAT_OK")

    event = await run_web_heartbeat_once(
        config, "+15550002222", reply_resolver=resolver, sender=sender, session_store=store
    )

    assert event.status == "ok-token"
    assert store.get("main")["updated_at"] == 100.0
    sender.assert_not_awaited()


@pytest.mark.asyncio
async def test_token_with_text_sends_remainder(config, sender):
    resolver = AsyncMock(return_value=ReplyPayload(text="HEARTBEAT_OK The deploy window opens in ten minutes"))

    event = await run_web_heartbeat_once(config, "+15550002222", reply_resolver=resolver, sender=sender)

    assert event.status == "sent"
    sender.assert_awaited_once_with("+15550002222", "The deploy window opens in ten minutes")


@pytest.mark.asyncio
async def test_forced_session_id(config, store, sender):
    resolver = AsyncMock(return_value=None)

    await run_web_heartbeat_once(
        config, "+15550002222", reply_resolver=resolver, sender=sender, session_store=store, session_id="forced"
    )

    assert store.get("main")["session_id"] == "forced"
    assert resolver.await_args.args[0].message_sid == "forced"


@pytest.mark.asyncio
async def test_override_body_skips_resolver(config, sender):
    resolver = AsyncMock()

    event = await run_web_heartbeat_once(
        config, "+15550002222", reply_resolver=resolver, sender=sender, override_body="ping"
    )

    assert event.status == "sent"
    resolver.assert_not_awaited()
    sender.assert_awaited_once_with("+15550002222", "ping")


@pytest.mark.asyncio
async def test_blank_override_body_is_rejected(config, sender):
    with pytest.raises(ValueError):
        await run_web_heartbeat_once(
            config, "+15550002222", reply_resolver=AsyncMock(), sender=sender, override_body="   "
        )


@pytest.mark.asyncio
async def test_dry_run_does_not_send(config, sender):
    resolver = AsyncMock(return_value=ReplyPayload(text="Something to say"))

    event = await run_web_heartbeat_once(
        config, "+15550002222", reply_resolver=resolver, sender=sender, dry_run=True
    )

    assert event is None
    sender.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_failure_is_logged_and_raised(config, tmp_path):
    resolver = AsyncMock(return_value=ReplyPayload(text="alert"))
    sender = AsyncMock(side_effect=ConnectionError("socket closed"))
    delivery_log = DeliveryLog(tmp_path / "data")

    with pytest.raises(ConnectionError):
        await run_web_heartbeat_once(
            config, "+15550002222", reply_resolver=resolver, sender=sender, delivery_log=delivery_log
        )

    records = _heartbeat_records(tmp_path)
    assert records[0]["status"] == "failed"
    assert "socket closed" in records[0]["reason"]


def test_heartbeat_service_init():
    service = HeartbeatService(interval_seconds=10)
    assert service.interval == 10
    assert not service._running


@pytest.mark.asyncio
async def test_heartbeat_run_loop_calls_tick():
    """The loop sleeps first, then ticks; a failing tick does not stop it."""
    service = HeartbeatService(interval_seconds=1)
    tick = AsyncMock(side_effect=[RuntimeError("boom"), None])

    call_count = 0

    async def mock_sleep(seconds):
        nonlocal call_count
        call_count += 1
        if call_count > 2:
            service.stop()

    with patch("chatrelay.heartbeat.service.asyncio.sleep", side_effect=mock_sleep):
        await service.run(tick)

    assert tick.await_count == 2
    assert not service._running


@pytest.mark.asyncio
async def test_heartbeat_tick_runs_every_recipient(config, store, sender):
    config.web.allow_from = ["+15550002222", "+15550003333"]
    resolver = AsyncMock(side_effect=[RuntimeError("model down"), ReplyPayload(text="hello")])

    tick = heartbeat_tick(config, reply_resolver=resolver, sender=sender, session_store=store)
    await tick()

    assert resolver.await_count == 2
    sender.assert_awaited_once_with("+15550003333", "hello")
