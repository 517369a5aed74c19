"""Tests for chunking, envelopes, control tokens and activation parsing."""

from datetime import datetime, timezone

from chatrelay.reply.activation import parse_activation_command
from chatrelay.reply.chunk import chunk_text
from chatrelay.reply.envelope import format_agent_envelope
from chatrelay.reply.tokens import (
    HEARTBEAT_TOKEN,
    is_silent_reply_text,
    strip_heartbeat_token,
)


def test_chunk_short_text_is_single_chunk():
    assert chunk_text("hello", 10) == ["hello"]
    assert chunk_text("", 10) == []
    assert chunk_text(None, 10) == []
    assert chunk_text("hello world", 0) == ["hello world"]


def test_chunk_prefers_newlines():
    text = "first line\nsecond line"
    assert chunk_text(text, 15) == ["first line", "second line"]


def test_chunk_falls_back_to_whitespace():
    assert chunk_text("aaaa bbbb cccc", 10) == ["aaaa bbbb", "cccc"]


def test_chunk_hard_cuts_long_words():
    assert chunk_text("abcdefghij", 4) == ["abcd", "efgh", "ij"]


def test_chunks_respect_limit():
    text = ("lorem ipsum dolor sit amet " * 40).strip()
    chunks = chunk_text(text, 50)
    assert all(len(chunk) <= 50 for chunk in chunks)
    assert " ".join(chunks) == text


def test_chunk_keeps_indentation_and_blank_lines():
    text = "line one\n    indented code\n\n\nlast"

    chunks = chunk_text(text, 12)

    assert chunks == ["line one", "    indented", "code\n\n\nlast"]
    assert f"{chunks[0]}\n{chunks[1]} {chunks[2]}" == text


def test_chunk_blank_lines_stay_with_the_text():
    text = "alpha\n\n  beta gamma"

    chunks = chunk_text(text, 8)

    assert chunks == ["alpha\n", "  beta", "gamma"]
    assert f"{chunks[0]}\n{chunks[1]} {chunks[2]}" == text


def test_envelope_with_sender_and_timestamp():
    ts = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc).timestamp()
    assert format_agent_envelope("WhatsApp", "hi", from_="+15550001111", timestamp=ts) == (
        "[WhatsApp +15550001111 2025-01-01T10:00Z] hi"
    )


def test_envelope_minimal():
    assert format_agent_envelope("Telegram", "hi") == "[Telegram] hi"


def test_strip_token_only_reply():
    result = strip_heartbeat_token(HEARTBEAT_TOKEN)
    assert result.should_skip is True
    assert result.did_strip is True


def test_strip_token_from_edges():
    result = strip_heartbeat_token(f"{HEARTBEAT_TOKEN} all good here {HEARTBEAT_TOKEN}")
    assert result.should_skip is False
    assert result.text == "all good here"


def test_strip_keeps_token_in_middle():
    text = f"say {HEARTBEAT_TOKEN} when done"
    result = strip_heartbeat_token(text)
    assert result.text == text
    assert result.did_strip is False


def test_heartbeat_mode_skips_short_ack():
    result = strip_heartbeat_token(f"{HEARTBEAT_TOKEN} nothing new", mode="heartbeat")
    assert result.should_skip is True
    long_text = "x" * 40
    result = strip_heartbeat_token(f"{HEARTBEAT_TOKEN} {long_text}", mode="heartbeat")
    assert result.should_skip is False
    assert result.text == long_text


def test_strip_empty_reply():
    assert strip_heartbeat_token(None).should_skip is True
    assert strip_heartbeat_token("   ").should_skip is True


def test_silent_reply_text():
    assert is_silent_reply_text("NO_REPLY")
    assert is_silent_reply_text("  NO_REPLY\n")
    assert not is_silent_reply_text("NO_REPLY please")
    assert not is_silent_reply_text(None)


def test_parse_activation_command():
    assert parse_activation_command("/activation always").mode == "always"
    assert parse_activation_command("/ACTIVATION Mention").mode == "mention"
    bare = parse_activation_command("/activation")
    assert bare.has_command is True
    assert bare.mode is None
    unknown = parse_activation_command("/activation sometimes")
    assert unknown.has_command is True
    assert unknown.mode is None
    assert parse_activation_command("please /activation always").has_command is False
    assert parse_activation_command("").has_command is False
