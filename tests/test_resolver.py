"""Tests for the LLM-backed reply resolver."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.agent.resolver import RelayReplyResolver, build_system_prompt
from chatrelay.bus.events import ReplyEnvelope, ReplyHooks, ReplyPayload
from chatrelay.bus.queue import SystemEventQueue
from chatrelay.errors import ResolverError
from chatrelay.providers.base import LLMResponse
from chatrelay.reply.tokens import HEARTBEAT_TOKEN, SILENT_REPLY_TOKEN
from chatrelay.session.store import SessionStore
from chatrelay.session.transcript import TranscriptStore


@pytest.fixture
def provider():
    mock = MagicMock()
    mock.chat = AsyncMock(return_value=LLMResponse(content=" hi there "))
    return mock


@pytest.fixture
def transcripts(tmp_path):
    return TranscriptStore(tmp_path / "transcripts")


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def resolver(provider, transcripts, store):
    return RelayReplyResolver(provider=provider, transcripts=transcripts, session_store=store)


def _direct(body="hello", sender="+15550002222", **kwargs) -> ReplyEnvelope:
    return ReplyEnvelope(
        body=body, from_address=sender, to_address="+15550001111", raw_body=body, command_body=body, **kwargs
    )


def _group(body="hello", is_owner=False, **kwargs) -> ReplyEnvelope:
    return ReplyEnvelope(
        body=body,
        from_address="123@g.us",
        to_address="+15550001111",
        chat_type="group",
        conversation_id="123@g.us",
        raw_body=body,
        command_body=body,
        is_owner=is_owner,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_allowed_sender_gets_llm_reply(resolver, provider, transcripts, config):
    result = await resolver(_direct(), ReplyHooks(), config)

    assert result == ReplyPayload(text="hi there")
    messages = provider.chat.await_args.args[0]
    assert messages[0]["role"] == "system"
    assert messages[-1] == {"role": "user", "content": "hello"}
    assert provider.chat.await_args.kwargs["model"] == config.agents.defaults.model
    assert transcripts.get_history("main") == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
    ]


@pytest.mark.asyncio
async def test_unknown_sender_is_ignored(resolver, provider, config):
    result = await resolver(_direct(sender="+15559999999"), ReplyHooks(), config)

    assert result is None
    provider.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_without_allowlist_only_self_is_answered(resolver, provider, config):
    config.web.allow_from = []

    assert await resolver(_direct(sender="+15550002222"), ReplyHooks(), config) is None
    assert await resolver(_direct(sender="+15550001111"), ReplyHooks(), config) is not None


@pytest.mark.asyncio
async def test_wildcard_allows_everyone(resolver, config):
    config.web.allow_from = ["*"]

    assert await resolver(_direct(sender="+15559999999"), ReplyHooks(), config) is not None


@pytest.mark.asyncio
async def test_other_surfaces_are_trusted(resolver, config):
    envelope = ReplyEnvelope(body="hi", from_address="telegram:42", to_address="telegram:bot", surface="telegram")

    assert await resolver(envelope, ReplyHooks(), config) is not None


@pytest.mark.asyncio
async def test_history_is_included(resolver, provider, transcripts, config):
    transcripts.save_turn("main", "earlier question", "earlier answer")

    await resolver(_direct(), ReplyHooks(), config)

    messages = provider.chat.await_args.args[0]
    assert messages[1:3] == [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
    ]


@pytest.mark.asyncio
async def test_system_events_are_prepended_once(provider, transcripts, config):
    events = SystemEventQueue()
    events.enqueue("WhatsApp gateway connected as +15550001111.")
    resolver = RelayReplyResolver(provider=provider, transcripts=transcripts, system_events=events)

    await resolver(_direct(), ReplyHooks(), config)

    content = provider.chat.await_args.args[0][-1]["content"]
    assert content == "System: WhatsApp gateway connected as +15550001111.\n\nhello"
    assert len(events) == 0


@pytest.mark.asyncio
async def test_reply_start_hook_is_awaited(resolver, config):
    on_start = AsyncMock()

    await resolver(_direct(), ReplyHooks(on_reply_start=on_start), config)

    on_start.assert_awaited_once()


@pytest.mark.asyncio
async def test_heartbeat_skips_commands_and_transcript(resolver, provider, transcripts, config):
    result = await resolver(_direct(body="/status"), ReplyHooks(is_heartbeat=True), config)

    assert result == ReplyPayload(text="hi there")
    provider.chat.assert_awaited_once()
    assert transcripts.get_history("main") == []


@pytest.mark.asyncio
async def test_empty_model_reply_returns_none(resolver, provider, config):
    provider.chat.return_value = LLMResponse(content="   ")

    assert await resolver(_direct(), ReplyHooks(), config) is None


@pytest.mark.asyncio
async def test_provider_failure_raises_resolver_error(resolver, provider, config):
    provider.chat.side_effect = RuntimeError("upstream 500")

    with pytest.raises(ResolverError, match="upstream 500"):
        await resolver(_direct(), ReplyHooks(), config)


@pytest.mark.asyncio
async def test_owner_sets_group_activation(resolver, provider, store, config):
    result = await resolver(_group("/activation always", is_owner=True), ReplyHooks(), config)

    assert result.text == "⚙️ Group activation set to always."
    assert store.get_group_activation("whatsapp:group:123@g.us") == "always"
    provider.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_activation_usage_shows_current_mode(resolver, config):
    result = await resolver(_group("/activation", is_owner=True), ReplyHooks(), config)

    assert result.text == "⚙️ Group activation: mention. Usage: /activation mention|always"


@pytest.mark.asyncio
async def test_activation_from_non_owner_is_dropped(resolver, provider, store, config):
    result = await resolver(_group("/activation always"), ReplyHooks(), config)

    assert result is None
    assert store.get_group_activation("whatsapp:group:123@g.us") is None
    provider.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_activation_from_telegram_group_member_is_dropped(resolver, provider, store, config):
    envelope = ReplyEnvelope(
        body="/activation always",
        from_address="telegram:group:-100",
        to_address="telegram:bot",
        surface="telegram",
        chat_type="group",
        conversation_id="telegram:group:-100",
        raw_body="/activation always",
    )

    result = await resolver(envelope, ReplyHooks(), config)

    assert result is None
    assert store.get_group_activation("whatsapp:group:telegram:group:-100") is None
    provider.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_activation_in_direct_chat(resolver, config):
    result = await resolver(_direct(body="/activation always"), ReplyHooks(), config)

    assert result.text == "⚙️ Group activation only applies to group chats."


@pytest.mark.asyncio
async def test_status_command(provider, transcripts, store, config):
    resolver = RelayReplyResolver(
        provider=provider, transcripts=transcripts, session_store=store, status_text=lambda: "web connected"
    )

    result = await resolver(_direct(body="/status"), ReplyHooks(), config)

    assert result.text.startswith("⚙️ Status: ")
    assert f"model {config.agents.defaults.model}" in result.text
    assert "session main" in result.text
    assert "web connected" in result.text
    provider.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_reset_command_clears_transcript(resolver, transcripts, config):
    transcripts.save_turn("main", "q", "a")

    result = await resolver(_direct(body="/new"), ReplyHooks(), config)

    assert result.text == "⚙️ Started a new session."
    assert transcripts.get_history("main") == []


def test_system_prompt_describes_group(config):
    envelope = _group(group_subject="Family", group_members="Eve (+15550004444), Bob (+15550003333)")

    prompt = build_system_prompt(config, envelope)

    assert 'group chat "Family"' in prompt
    assert "Group members: Eve (+15550004444), Bob (+15550003333)." in prompt
    assert SILENT_REPLY_TOKEN in prompt
    assert HEARTBEAT_TOKEN in prompt
    assert "Owner numbers: +15550002222." in prompt
