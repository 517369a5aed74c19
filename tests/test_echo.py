"""Tests for EchoGuard."""

from chatrelay.web.echo import EchoGuard


def test_suppresses_once():
    guard = EchoGuard()
    guard.record_sent("hello")
    assert guard.should_suppress("hello") is True
    assert guard.should_suppress("hello") is False


def test_unknown_and_empty_bodies_pass():
    guard = EchoGuard()
    guard.record_sent("")
    guard.record_sent(None)
    assert len(guard) == 0
    assert guard.should_suppress("hello") is False
    assert guard.should_suppress("") is False


def test_evicts_oldest_past_capacity():
    guard = EchoGuard(max_size=3)
    for body in ("a", "b", "c", "d"):
        guard.record_sent(body)
    assert len(guard) == 3
    assert "a" not in guard
    assert "d" in guard


def test_rerecording_refreshes_position():
    guard = EchoGuard(max_size=2)
    guard.record_sent("a")
    guard.record_sent("b")
    guard.record_sent("a")
    guard.record_sent("c")
    assert "a" in guard
    assert "b" not in guard
