"""Connection supervisor for the WhatsApp Web surface."""

import asyncio
import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from chatrelay.bus.events import DisconnectReason, InboundMessage, ReplyResolver
from chatrelay.bus.queue import SystemEventQueue
from chatrelay.config.schema import Config, ReconnectConfig
from chatrelay.errors import ListenerError
from chatrelay.observability.audit import DeliveryLog
from chatrelay.session.store import SessionStore
from chatrelay.utils.helpers import format_duration, format_error, normalize_e164
from chatrelay.web.auto_reply import ConnectionContext, WebAutoReplyHandler
from chatrelay.web.delivery import MediaLoader
from chatrelay.web.echo import EchoGuard
from chatrelay.web.history import GroupHistory
from chatrelay.web.mentions import GroupGate
from chatrelay.web.reconnect import (
    ReconnectPolicy,
    compute_backoff,
    resolve_heartbeat_seconds,
    resolve_reconnect_policy,
    sleep_with_abort,
)
from chatrelay.web.settings import WebMonitorSettings

MESSAGE_TIMEOUT_SECONDS = 30 * 60
WATCHDOG_CHECK_SECONDS = 60
STALE_WARNING_MINUTES = 30

LOGGED_OUT_MESSAGE = "WhatsApp session logged out. Relink the bridge device, then restart `chatrelay gateway`."


class WebListener(Protocol):
    """What a listener factory returns."""

    on_close: Awaitable[DisconnectReason] | None

    async def close(self) -> None: ...


ListenerFactory = Callable[..., Awaitable[WebListener]]
StatusSink = Callable[["ConnectionStatus"], Any]
AbortableSleep = Callable[[float, asyncio.Event | None], Awaitable[bool]]


class MonitorState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class DisconnectInfo:
    at: float
    status: int | None = None
    error: str | None = None
    logged_out: bool = False


@dataclass
class ConnectionStatus:
    """Supervisor-owned view of the connection, copied out to status sinks."""

    running: bool = False
    connected: bool = False
    reconnect_attempts: int = 0
    last_connected_at: float | None = None
    last_disconnect: DisconnectInfo | None = None
    last_message_at: float | None = None
    last_event_at: float | None = None
    last_error: str | None = None

    def snapshot(self) -> "ConnectionStatus":
        return copy.deepcopy(self)


@dataclass
class MonitorTuning:
    """Overrides for timing, mainly so tests can run the loop quickly."""

    reconnect: ReconnectConfig | ReconnectPolicy | None = None
    heartbeat_seconds: int | None = None
    message_timeout_seconds: float = MESSAGE_TIMEOUT_SECONDS
    watchdog_check_seconds: float = WATCHDOG_CHECK_SECONDS
    sleep: AbortableSleep | None = None


@dataclass
class _ActiveConnection:
    context: ConnectionContext
    listener: WebListener
    forced_close: asyncio.Future[DisconnectReason]
    timers: list[asyncio.Task[None]] = field(default_factory=list)
    closed: bool = False


class WebMonitor:
    """
    Keeps one WhatsApp Web listener alive and answers its messages.

    The loop connects through the listener factory, waits until the
    connection closes (or the watchdog forces it closed, or the abort event
    fires), then reconnects with exponential backoff. It stops for good on
    abort, logout, or once ``max_attempts`` consecutive reconnects failed.
    """

    def __init__(
        self,
        config: Config,
        reply_resolver: ReplyResolver,
        *,
        listener_factory: ListenerFactory | None = None,
        keep_alive: bool = True,
        abort: asyncio.Event | None = None,
        tuning: MonitorTuning | None = None,
        session_store: SessionStore | None = None,
        delivery_log: DeliveryLog | None = None,
        system_events: SystemEventQueue | None = None,
        status_sink: StatusSink | None = None,
        media_loader: MediaLoader | None = None,
        verbose: bool = False,
    ) -> None:
        self.config = config
        self.tuning = tuning or MonitorTuning()
        self.settings = WebMonitorSettings.from_config(config)
        self.policy = resolve_reconnect_policy(config, self.tuning.reconnect)
        self.heartbeat_seconds = resolve_heartbeat_seconds(config, self.tuning.heartbeat_seconds)
        self.keep_alive = keep_alive
        self.abort = abort or asyncio.Event()
        self.verbose = verbose
        self.session_store = session_store
        self.delivery_log = delivery_log
        self.system_events = system_events
        self.status_sink = status_sink
        self.status = ConnectionStatus()
        self.state = MonitorState.STOPPED
        self.reconnect_attempts = 0
        self._active: _ActiveConnection | None = None

        if listener_factory is None:
            from chatrelay.web.inbound import bridge_listener_factory

            listener_factory = bridge_listener_factory(config.web)
        self.listener_factory = listener_factory

        self.echo_guard = EchoGuard()
        self.history = GroupHistory(self.settings.group_history_limit)
        self.gate = GroupGate(
            mention_config=self.settings.mention_config,
            history=self.history,
            owners=list(self.settings.owners),
            groups=dict(self.settings.groups),
            store=session_store,
        )
        self.handler = WebAutoReplyHandler(
            config=config,
            settings=self.settings,
            reply_resolver=reply_resolver,
            echo_guard=self.echo_guard,
            history=self.history,
            gate=self.gate,
            session_store=session_store,
            delivery_log=delivery_log,
            media_loader=media_loader,
        )

    @property
    def active_listener(self) -> WebListener | None:
        return self._active.listener if self._active and not self._active.closed else None

    def stop(self) -> None:
        """Request shutdown; observed at loop top, in the close race and in sleeps."""
        self.abort.set()

    def start(self) -> "MonitorHandle":
        """Run the loop as a task and return a handle owning it."""
        task = asyncio.create_task(self.run(), name="web-monitor")
        return MonitorHandle(self, task)

    def _emit_status(self) -> None:
        if self.status_sink is None:
            return
        try:
            self.status_sink(self.status.snapshot())
        except Exception as e:
            logger.warning(f"Status sink failed: {format_error(e)}")

    def _enqueue_event(self, text: str) -> None:
        if self.system_events is not None:
            self.system_events.enqueue(text)

    async def _sleep(self, seconds: float) -> bool:
        sleeper = self.tuning.sleep or sleep_with_abort
        return await sleeper(seconds, self.abort)

    async def _on_message(self, conn: ConnectionContext, msg: InboundMessage) -> None:
        conn.handled_messages += 1
        conn.last_message_at = time.monotonic()
        now = time.time()
        self.status.last_message_at = now
        self.status.last_event_at = now
        self._emit_status()
        await self.handler.handle(msg, conn)

    async def run(self) -> ConnectionStatus:
        """
        Supervise connections until a terminal condition.

        Returns:
            The final connection status.
        """
        self.status.running = True
        self._emit_status()

        while not self.abort.is_set():
            conn = ConnectionContext()
            self.state = MonitorState.CONNECTING
            active: _ActiveConnection | None = None
            reason: DisconnectReason | None

            try:
                listener = await self.listener_factory(
                    on_message=lambda msg, _conn=conn: self._on_message(_conn, msg),
                    verbose=self.verbose,
                )
            except Exception as e:
                logger.error(f"WhatsApp Web connection failed: {format_error(e)}")
                reason = DisconnectReason(status=None, error=format_error(e))
            else:
                conn.transport = listener  # type: ignore[assignment]
                active = self._on_connected(conn, listener)
                if not self.keep_alive:
                    await self._close_active(active)
                    break
                reason = await self._wait_for_close(active)

            if active is not None and time.monotonic() - conn.started_at > self.heartbeat_seconds:
                self.reconnect_attempts = 0
            self.status.reconnect_attempts = self.reconnect_attempts

            if reason is None or self.abort.is_set():
                if active is not None:
                    await self._close_active(active)
                break

            if not await self._handle_disconnect(conn, active, reason):
                break

        self.state = MonitorState.STOPPED
        self.status.running = False
        self.status.connected = False
        self.status.last_event_at = time.time()
        self._emit_status()
        return self.status.snapshot()

    def _on_connected(self, conn: ConnectionContext, listener: WebListener) -> _ActiveConnection:
        self.state = MonitorState.CONNECTED
        now = time.time()
        self.status.connected = True
        self.status.last_connected_at = now
        self.status.last_event_at = now
        self.status.last_error = None
        self._emit_status()

        self_e164 = getattr(listener, "self_e164", None) or self.settings.self_e164
        suffix = f" as {normalize_e164(self_e164)}" if self_e164 else ""
        self._enqueue_event(f"WhatsApp gateway connected{suffix}.")

        active = _ActiveConnection(
            context=conn,
            listener=listener,
            forced_close=asyncio.get_running_loop().create_future(),
        )
        self._active = active
        if self.keep_alive:
            active.timers.append(asyncio.create_task(self._heartbeat_loop(conn)))
            active.timers.append(asyncio.create_task(self._watchdog_loop(active)))
        logger.info("Listening for personal WhatsApp inbound messages.")
        return active

    async def _heartbeat_loop(self, conn: ConnectionContext) -> None:
        log = logger.bind(module="web-heartbeat", connection_id=conn.connection_id)
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            now = time.monotonic()
            minutes_since = None
            if conn.last_message_at is not None:
                minutes_since = int((now - conn.last_message_at) // 60)
            details = (
                f"connection={conn.connection_id} reconnect_attempts={self.reconnect_attempts} "
                f"messages_handled={conn.handled_messages} last_message_at={self.status.last_message_at} "
                f"uptime={format_duration((now - conn.started_at) * 1000)}"
            )
            if minutes_since is not None and minutes_since > STALE_WARNING_MINUTES:
                log.warning(f"web gateway heartbeat - no messages in {minutes_since}m ({details})")
            else:
                log.info(f"web gateway heartbeat ({details})")

    async def _watchdog_loop(self, active: _ActiveConnection) -> None:
        conn = active.context
        timeout = self.tuning.message_timeout_seconds
        while True:
            await asyncio.sleep(self.tuning.watchdog_check_seconds)
            reference = conn.last_message_at if conn.last_message_at is not None else conn.started_at
            silent_for = time.monotonic() - reference
            if silent_for <= timeout:
                continue
            minutes = int(silent_for // 60)
            logger.bind(module="web-heartbeat", connection_id=conn.connection_id).warning(
                f"No messages received in {minutes}m - restarting connection"
            )
            reason = DisconnectReason(status=499, logged_out=False, error="watchdog-timeout")
            if not active.forced_close.done():
                active.forced_close.set_result(reason)
            signal_close = getattr(active.listener, "signal_close", None)
            if callable(signal_close):
                try:
                    signal_close(reason)
                except Exception as e:
                    logger.debug(f"signal_close failed: {format_error(e)}")
            return

    async def _wait_for_close(self, active: _ActiveConnection) -> DisconnectReason | None:
        """Race listener close, watchdog and abort. None means aborted."""
        waiters: dict[asyncio.Future[Any], str] = {
            asyncio.ensure_future(self.abort.wait()): "abort",
            asyncio.ensure_future(asyncio.shield(active.forced_close)): "watchdog",
        }
        on_close = getattr(active.listener, "on_close", None)
        if on_close is not None:
            waiters[asyncio.ensure_future(asyncio.shield(on_close))] = "close"

        try:
            done, _ = await asyncio.wait(waiters.keys(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if self.abort.is_set():
            return None
        for waiter in done:
            if waiters[waiter] == "watchdog":
                return waiter.result()
        for waiter in done:
            if waiters[waiter] == "close":
                try:
                    result = waiter.result()
                except Exception as e:
                    logger.error(f"listener on_close failed: {format_error(e)}")
                    return DisconnectReason(status=500, error=format_error(e))
                if isinstance(result, DisconnectReason):
                    return result
                return DisconnectReason(error=str(result) if result is not None else None)
        return None

    async def _close_active(self, active: _ActiveConnection) -> None:
        """
        Stop timers, drain background work, then close the listener once.

        Closing the listener waits for in-flight handlers, which may track more
        background work, so the context is drained again afterwards.
        """
        if active.closed:
            return
        active.closed = True
        self.state = MonitorState.CLOSING
        if self._active is active:
            self._active = None
        for timer in active.timers:
            timer.cancel()
        await asyncio.gather(*active.timers, return_exceptions=True)
        await active.context.drain()
        try:
            await active.listener.close()
        except Exception as e:
            logger.debug(f"Socket close failed: {format_error(e)}")
        await active.context.drain()

    async def _handle_disconnect(
        self,
        conn: ConnectionContext,
        active: _ActiveConnection | None,
        reason: DisconnectReason,
    ) -> bool:
        """Record a disconnect and back off. Returns False when the loop must stop."""
        status_code = reason.status if reason.status is not None else "unknown"
        error_text = reason.error or f"status {status_code}"
        now = time.time()
        self.status.connected = False
        self.status.last_event_at = now
        self.status.last_disconnect = DisconnectInfo(
            at=now, status=reason.status, error=error_text, logged_out=reason.logged_out
        )
        self.status.last_error = error_text
        self._emit_status()
        logger.bind(module="web-reconnect", connection_id=conn.connection_id).info(
            f"web reconnect: connection closed (status {status_code}, logged_out={reason.logged_out}, "
            f"attempts={self.reconnect_attempts}): {error_text}"
        )
        self._enqueue_event(f"WhatsApp gateway disconnected (status {status_code})")

        if reason.logged_out:
            logger.error(LOGGED_OUT_MESSAGE)
            self._audit_reconnect(conn, reason, None, "logged-out")
            if active is not None:
                await self._close_active(active)
            return False

        max_attempts = self.policy.max_attempts
        if max_attempts > 0 and self.reconnect_attempts >= max_attempts:
            logger.error(
                f"WhatsApp Web reconnect: max attempts reached ({self.reconnect_attempts}/{max_attempts}). "
                "Stopping web monitoring."
            )
            self._audit_reconnect(conn, reason, None, "max-attempts")
            if active is not None:
                await self._close_active(active)
            return False

        self.state = MonitorState.RECONNECTING
        self.reconnect_attempts += 1
        self.status.reconnect_attempts = self.reconnect_attempts
        self._emit_status()
        delay_ms = compute_backoff(self.policy, self.reconnect_attempts)
        logger.error(
            f"WhatsApp Web connection closed (status {status_code}). "
            f"Retry {self.reconnect_attempts}/{max_attempts or '∞'} in {format_duration(delay_ms)}… ({error_text})"
        )
        self._audit_reconnect(conn, reason, delay_ms, "retry")
        if active is not None:
            await self._close_active(active)
        return await self._sleep(delay_ms / 1000)

    def _audit_reconnect(
        self, conn: ConnectionContext, reason: DisconnectReason, delay_ms: int | None, outcome: str
    ) -> None:
        if self.delivery_log is None:
            return
        self.delivery_log.log_reconnect(
            connection_id=conn.connection_id,
            status=reason.status,
            reconnect_attempts=self.reconnect_attempts,
            delay_ms=delay_ms,
            error=reason.error,
            logged_out=reason.logged_out,
            outcome=outcome,
        )


class MonitorHandle:
    """
    Owner-side handle for a running monitor.

    Holds the task and exposes the live listener for outbound sends.
    """

    def __init__(self, monitor: WebMonitor, task: asyncio.Task[ConnectionStatus]) -> None:
        self.monitor = monitor
        self.task = task

    @property
    def status(self) -> ConnectionStatus:
        return self.monitor.status.snapshot()

    @property
    def active_listener(self) -> WebListener | None:
        return self.monitor.active_listener

    async def send_text(self, to: str, text: str) -> str | None:
        listener = self.active_listener
        if listener is None:
            raise ListenerError("No active WhatsApp Web listener")
        return await listener.send_text(to, text)  # type: ignore[attr-defined]

    def stop(self) -> None:
        self.monitor.stop()

    async def wait(self) -> ConnectionStatus:
        return await self.task


async def monitor_web_provider(
    config: Config,
    reply_resolver: ReplyResolver,
    **kwargs: Any,
) -> ConnectionStatus:
    """Run a web monitor to completion. Keyword arguments go to ``WebMonitor``."""
    return await WebMonitor(config, reply_resolver, **kwargs).run()
