"""Tests for the web connection supervisor."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.bus.events import DisconnectReason, ReplyPayload
from chatrelay.bus.queue import SystemEventQueue
from chatrelay.config.schema import ReconnectConfig
from chatrelay.errors import ListenerError
from chatrelay.observability.audit import DeliveryLog
from chatrelay.web.monitor import (
    LOGGED_OUT_MESSAGE,
    MonitorHandle,
    MonitorTuning,
    WebMonitor,
    monitor_web_provider,
)


class FakeListener:
    def __init__(self, close_with: DisconnectReason | None = None) -> None:
        self.on_close: asyncio.Future[DisconnectReason] = asyncio.get_running_loop().create_future()
        if close_with is not None:
            self.on_close.set_result(close_with)
        self.self_e164 = "+15550001111"
        self.closed = 0
        self.signals: list[DisconnectReason] = []
        self.send_text = AsyncMock(return_value="out-1")
        self.send_media = AsyncMock(return_value="out-2")
        self.send_composing = AsyncMock()

    def signal_close(self, reason: DisconnectReason) -> None:
        self.signals.append(reason)
        if not self.on_close.done():
            self.on_close.set_result(reason)

    async def close(self) -> None:
        self.closed += 1


class FakeFactory:
    """Hands out listeners in order; an Exception entry is raised instead."""

    def __init__(self, *plan) -> None:
        self.plan = list(plan)
        self.calls = 0
        self.listeners: list[FakeListener] = []
        self.on_message = None

    async def __call__(self, on_message, verbose=False):
        self.calls += 1
        self.on_message = on_message
        step = self.plan.pop(0) if self.plan else DisconnectReason(status=428)
        if isinstance(step, Exception):
            raise step
        listener = FakeListener(close_with=step)
        self.listeners.append(listener)
        return listener


def _tuning(max_attempts: int = 2, sleep=None, **kwargs) -> MonitorTuning:
    return MonitorTuning(
        reconnect=ReconnectConfig(initial_ms=1000, max_ms=5000, factor=2, max_attempts=max_attempts),
        sleep=sleep or AsyncMock(return_value=True),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_stops_after_max_attempts(config):
    factory = FakeFactory()
    tuning = _tuning(max_attempts=2)
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, tuning=tuning)

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 3
    assert [c.args[0] for c in tuning.sleep.await_args_list] == [1.0, 2.0]
    assert status.running is False
    assert status.connected is False
    assert status.reconnect_attempts == 2
    assert status.last_disconnect.status == 428
    assert all(listener.closed == 1 for listener in factory.listeners)


@pytest.mark.asyncio
async def test_factory_errors_are_retried(config, log_messages):
    factory = FakeFactory(OSError("bridge down"), OSError("bridge down"))
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, tuning=_tuning(max_attempts=1))

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 2
    assert factory.listeners == []
    assert status.last_disconnect.status is None
    assert "bridge down" in status.last_error
    assert any("max attempts reached" in m for m in log_messages)


@pytest.mark.asyncio
async def test_logged_out_stops_without_retry(config, log_messages):
    factory = FakeFactory(DisconnectReason(status=401, logged_out=True, error="logged out"))
    tuning = _tuning(max_attempts=5)
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, tuning=tuning)

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 1
    tuning.sleep.assert_not_awaited()
    assert status.last_disconnect.logged_out is True
    assert LOGGED_OUT_MESSAGE in log_messages
    assert factory.listeners[0].closed == 1


@pytest.mark.asyncio
async def test_abort_during_backoff_stops_loop(config):
    def fake_sleep(seconds, abort):
        abort.set()
        return False

    factory = FakeFactory()
    tuning = _tuning(max_attempts=0, sleep=AsyncMock(side_effect=fake_sleep))
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, tuning=tuning)

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 1
    assert status.reconnect_attempts == 1
    assert monitor.abort.is_set()


@pytest.mark.asyncio
async def test_keep_alive_false_runs_one_connection(config):
    factory = FakeFactory(None)
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, keep_alive=False, tuning=_tuning())

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 1
    assert factory.listeners[0].closed == 1
    assert status.last_disconnect is None
    assert status.running is False


@pytest.mark.asyncio
async def test_watchdog_forces_reconnect(config):
    factory = FakeFactory(None, None)
    tuning = _tuning(max_attempts=1, message_timeout_seconds=0.0, watchdog_check_seconds=0.01)
    monitor = WebMonitor(config, AsyncMock(), listener_factory=factory, tuning=tuning)

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert factory.calls == 2
    assert status.last_disconnect.status == 499
    assert status.last_disconnect.error == "watchdog-timeout"
    assert factory.listeners[0].signals[0].status == 499
    assert all(listener.closed == 1 for listener in factory.listeners)


@pytest.mark.asyncio
async def test_on_close_exception_maps_to_500(config):
    factory = FakeFactory(None)

    async def failing_factory(on_message, verbose=False):
        listener = await factory(on_message, verbose)
        listener.on_close.set_exception(RuntimeError("socket exploded"))
        return listener

    monitor = WebMonitor(
        config,
        AsyncMock(),
        listener_factory=failing_factory,
        tuning=_tuning(max_attempts=0, sleep=AsyncMock(return_value=False)),
    )

    status = await asyncio.wait_for(monitor.run(), timeout=5)

    assert status.last_disconnect.status == 500
    assert "socket exploded" in status.last_error


@pytest.mark.asyncio
async def test_status_sink_and_system_events(config):
    factory = FakeFactory()
    snapshots = []
    events = SystemEventQueue()
    monitor = WebMonitor(
        config,
        AsyncMock(),
        listener_factory=factory,
        tuning=_tuning(max_attempts=0, sleep=AsyncMock(return_value=False)),
        status_sink=snapshots.append,
        system_events=events,
    )

    await asyncio.wait_for(monitor.run(), timeout=5)

    assert snapshots[0].running is True
    assert any(s.connected for s in snapshots)
    assert snapshots[-1].running is False
    assert snapshots[-1].connected is False
    assert events.drain() == [
        "WhatsApp gateway connected as +15550001111.",
        "WhatsApp gateway disconnected (status 428)",
    ]


@pytest.mark.asyncio
async def test_status_sink_failure_is_logged(config, log_messages):
    sink = MagicMock(side_effect=RuntimeError("boom"))
    monitor = WebMonitor(
        config,
        AsyncMock(),
        listener_factory=FakeFactory(None),
        keep_alive=False,
        status_sink=sink,
    )

    await asyncio.wait_for(monitor.run(), timeout=5)

    assert sink.called
    assert any("Status sink failed" in m for m in log_messages)


@pytest.mark.asyncio
async def test_reconnects_are_audited(config, tmp_path):
    delivery_log = DeliveryLog(tmp_path / "data")
    monitor = WebMonitor(
        config,
        AsyncMock(),
        listener_factory=FakeFactory(),
        tuning=_tuning(max_attempts=1),
        delivery_log=delivery_log,
    )

    await asyncio.wait_for(monitor.run(), timeout=5)

    records = [
        json.loads(line)
        for path in (tmp_path / "data" / "audit").glob("*.jsonl")
        for line in path.read_text().splitlines()
    ]
    outcomes = [(r["outcome"], r["delay_ms"]) for r in records if r["type"] == "reconnect"]
    assert outcomes == [("retry", 1000), ("max-attempts", None)]


@pytest.mark.asyncio
async def test_handle_routes_messages_and_stops(config, make_message):
    factory = FakeFactory(None)
    resolver = AsyncMock(return_value=ReplyPayload(text="pong"))
    monitor = WebMonitor(config, resolver, listener_factory=factory, tuning=_tuning())
    handle = monitor.start()

    for _ in range(100):
        if factory.listeners:
            break
        await asyncio.sleep(0)
    listener = factory.listeners[0]
    assert handle.active_listener is listener

    await factory.on_message(make_message(body="ping"))
    assert await handle.send_text("+15550002222", "manual") == "out-1"

    handle.stop()
    status = await asyncio.wait_for(handle.wait(), timeout=5)

    sent = [c.args for c in listener.send_text.await_args_list]
    assert ("+15550002222", "pong") in sent
    assert ("+15550002222", "manual") in sent
    assert status.last_message_at is not None
    assert listener.closed == 1
    assert handle.active_listener is None


@pytest.mark.asyncio
async def test_handle_send_text_without_listener(config):
    monitor = WebMonitor(config, AsyncMock(), listener_factory=FakeFactory())
    handle = MonitorHandle(monitor, asyncio.create_task(asyncio.sleep(0)))

    with pytest.raises(ListenerError):
        await handle.send_text("+15550002222", "hi")
    await handle.task


@pytest.mark.asyncio
async def test_monitor_web_provider_runs_to_completion(config):
    factory = FakeFactory(None)

    status = await asyncio.wait_for(
        monitor_web_provider(config, AsyncMock(), listener_factory=factory, keep_alive=False), timeout=5
    )

    assert factory.calls == 1
    assert status.running is False
