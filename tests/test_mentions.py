"""Tests for mention detection and group gating."""

from unittest.mock import MagicMock

import pytest

from chatrelay.config.schema import GroupConfig
from chatrelay.web.history import GroupHistory
from chatrelay.web.mentions import (
    GroupGate,
    build_mention_config,
    clean_mention_text,
    is_bot_mentioned,
    is_status_command,
    resolve_group_activation,
    resolve_group_require_mention,
    resolve_owner_list,
    strip_mentions_for_command,
)
from chatrelay.web.settings import WebMonitorSettings


@pytest.fixture
def mention_config():
    return build_mention_config([r"@?relay"], allow_from=["+15550002222"])


def test_invalid_patterns_are_skipped():
    config = build_mention_config(["(unclosed", "ok"])
    assert len(config.mention_regexes) == 1


def test_clean_mention_text_drops_invisible_chars():
    assert clean_mention_text("He\u200bY\u2060") == "hey"


def test_mentioned_via_jid(make_group_message, mention_config):
    msg = make_group_message(body="hey", mentioned_ids=("15550001111:4@s.whatsapp.net",))
    assert is_bot_mentioned(msg, mention_config)


def test_mentioned_via_pattern(make_group_message, mention_config):
    assert is_bot_mentioned(make_group_message(body="Relay, what's up?"), mention_config)
    assert not is_bot_mentioned(make_group_message(body="nothing here"), mention_config)


def test_mentioned_via_digits(make_group_message, mention_config):
    assert is_bot_mentioned(make_group_message(body="ping @1 555 000 1111"), mention_config)


def test_digit_fallback_can_be_disabled(make_group_message):
    config = build_mention_config([], digit_fallback=False)
    assert not is_bot_mentioned(make_group_message(body="@15550001111"), config)


def test_self_chat_ignores_tags_and_digits(make_group_message):
    config = build_mention_config([], allow_from=["+15550001111"])
    assert config.digit_fallback is True
    msg = make_group_message(body="@15550001111 ping", mentioned_ids=("15550001111@s.whatsapp.net",))
    assert not is_bot_mentioned(msg, config)


def test_self_chat_still_honors_patterns(make_group_message):
    config = build_mention_config([r"@?relay"], allow_from=["+15550001111"])
    assert is_bot_mentioned(make_group_message(body="@15550001111 relay ping"), config)


def test_self_chat_gate_with_default_settings(config, make_group_message):
    config.web.allow_from = ["+15550001111"]
    settings = WebMonitorSettings.from_config(config)
    gate = GroupGate(settings.mention_config, GroupHistory(), owners=list(settings.owners))
    msg = make_group_message(body="@15550001111 ping", mentioned_ids=("15550001111@s.whatsapp.net",))

    decision = gate.evaluate(msg)

    assert decision.respond is False
    assert decision.reason == "no-mention"


def test_strip_mentions_for_command(mention_config):
    stripped = strip_mentions_for_command("@relay /activation always", mention_config.mention_regexes)
    assert stripped == "/activation always"
    assert strip_mentions_for_command("@15550001111 /status", (), "+15550001111") == "/status"


def test_status_command():
    assert is_status_command("/status")
    assert is_status_command(" STATUS ")
    assert is_status_command("/status now")
    assert not is_status_command("/statusx")
    assert not is_status_command("")


def test_owner_list():
    assert resolve_owner_list(["15550002222", "*"], "+15550001111") == ["+15550002222"]
    assert resolve_owner_list([], "+15550001111") == ["+15550001111"]
    assert resolve_owner_list(None, None) == []


def test_require_mention_resolution():
    groups = {"*": GroupConfig(require_mention=False), "g1": GroupConfig(require_mention=True)}
    assert resolve_group_require_mention(groups, "g1") is True
    assert resolve_group_require_mention(groups, "g2") is False
    assert resolve_group_require_mention({}, "g1") is True


def test_stored_activation_wins():
    store = MagicMock()
    store.get_group_activation.return_value = "always"
    assert resolve_group_activation("g1", store, {}) == "always"
    store.get_group_activation.assert_called_once_with("whatsapp:group:g1")
    store.get_group_activation.return_value = None
    assert resolve_group_activation("g1", store, {}) == "mention"


class TestGroupGate:
    def _gate(self, mention_config, store=None, groups=None):
        history = GroupHistory()
        return GroupGate(mention_config, history, owners=["+15550002222"], groups=groups, store=store), history

    def test_unmentioned_message_is_recorded_not_answered(self, make_group_message, mention_config):
        gate, history = self._gate(mention_config)
        decision = gate.evaluate(make_group_message(body="just chatting"))
        assert decision.respond is False
        assert decision.reason == "no-mention"
        assert decision.recorded is True
        assert [e.body for e in history.entries("123@g.us")] == ["just chatting"]

    def test_mention_is_answered(self, make_group_message, mention_config):
        gate, history = self._gate(mention_config)
        decision = gate.evaluate(make_group_message(body="relay help"))
        assert decision.respond is True
        assert decision.was_mentioned is True
        assert len(history.entries("123@g.us")) == 1

    def test_always_activation_answers_everything(self, make_group_message, mention_config):
        gate, _ = self._gate(mention_config, groups={"123@g.us": GroupConfig(require_mention=False)})
        decision = gate.evaluate(make_group_message(body="just chatting"))
        assert decision.respond is True
        assert decision.activation == "always"

    def test_owner_command_bypasses_history(self, make_group_message, mention_config):
        gate, history = self._gate(mention_config)
        msg = make_group_message(body="/activation always", sender_e164="+15550002222")
        decision = gate.evaluate(msg)
        assert decision.respond is True
        assert decision.bypass_mention is True
        assert decision.is_owner is True
        assert decision.command_body == "/activation always"
        assert history.entries("123@g.us") == []

    def test_non_owner_command_is_dropped(self, make_group_message, mention_config):
        gate, history = self._gate(mention_config)
        decision = gate.evaluate(make_group_message(body="relay /activation always"))
        assert decision.respond is False
        assert decision.reason == "non-owner-command"
        assert history.entries("123@g.us") == []

    def test_roster_is_noted(self, make_group_message, mention_config):
        gate, history = self._gate(mention_config)
        gate.evaluate(make_group_message(body="hi"))
        assert history.roster("123@g.us") == {"+15550003333": "Bob"}
