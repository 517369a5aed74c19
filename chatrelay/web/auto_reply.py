"""Per-message auto-reply pipeline for the web surface."""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Coroutine

from loguru import logger

from chatrelay.bus.events import (
    InboundMessage,
    ReplyEnvelope,
    ReplyHooks,
    ReplyPayload,
    ReplyResolver,
    ReplyTransport,
    normalize_reply_result,
)
from chatrelay.config.schema import Config
from chatrelay.errors import ListenerError
from chatrelay.observability.audit import DeliveryLog
from chatrelay.reply.envelope import format_agent_envelope
from chatrelay.reply.tokens import HEARTBEAT_TOKEN, is_silent_reply_text, strip_heartbeat_token
from chatrelay.session.store import SessionStore
from chatrelay.utils.helpers import elide, format_error, jid_to_e164, new_connection_id, normalize_e164
from chatrelay.web.delivery import MediaLoader, deliver_web_reply
from chatrelay.web.echo import EchoGuard
from chatrelay.web.history import GroupHistory, format_group_members, render_catch_up
from chatrelay.web.mentions import GroupDecision, GroupGate
from chatrelay.web.settings import WebMonitorSettings


@dataclass
class ConnectionContext:
    """State scoped to one listener connection."""

    connection_id: str = field(default_factory=new_connection_id)
    started_at: float = field(default_factory=time.monotonic)
    handled_messages: int = 0
    last_message_at: float | None = None
    transport: ReplyTransport | None = None
    background: set[asyncio.Task[Any]] = field(default_factory=set)

    def track(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task[Any]:
        """Run a coroutine in the background until the connection is torn down."""

        async def guarded() -> None:
            try:
                await coro
            except Exception as e:
                logger.warning(f"Background task {label} failed: {format_error(e)}")

        task = asyncio.create_task(guarded())
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def drain(self) -> None:
        """Wait for all background tasks; failures were already logged."""
        while self.background:
            pending = list(self.background)
            await asyncio.gather(*pending, return_exceptions=True)
            self.background.difference_update(pending)


def is_silent_payload(payload: ReplyPayload) -> bool:
    return is_silent_reply_text(payload.text) and not payload.has_media()


def format_reply_context(msg: InboundMessage) -> str | None:
    if not msg.reply_to_body:
        return None
    sender = msg.reply_to_sender or "unknown sender"
    id_part = f" id:{msg.reply_to_id}" if msg.reply_to_id else ""
    return f"[Replying to {sender}{id_part}]\n{msg.reply_to_body}\n[/Replying]"


@dataclass
class _TurnState:
    did_send: bool = False
    logged_heartbeat_strip: bool = False
    tool_chain: asyncio.Task[None] | None = None


class WebAutoReplyHandler:
    """
    Turns inbound web messages into resolver calls and delivered replies.

    Echo filtering and group gating happen synchronously on receipt. The
    resolver and delivery are awaited afterwards; tool results stream out
    in order through a chain of tasks ahead of the final payloads.
    """

    def __init__(
        self,
        config: Config,
        settings: WebMonitorSettings,
        reply_resolver: ReplyResolver,
        echo_guard: EchoGuard,
        history: GroupHistory,
        gate: GroupGate,
        session_store: SessionStore | None = None,
        delivery_log: DeliveryLog | None = None,
        media_loader: MediaLoader | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.reply_resolver = reply_resolver
        self.echo_guard = echo_guard
        self.history = history
        self.gate = gate
        self.session_store = session_store
        self.delivery_log = delivery_log
        self.media_loader = media_loader

    async def handle(self, msg: InboundMessage, conn: ConnectionContext) -> None:
        """Entry point for one inbound message."""
        if msg.from_address == msg.to_address:
            logger.debug(f"Same-phone mode detected (from == to: {msg.from_address})")

        if self.echo_guard.should_suppress(msg.body):
            logger.debug("Skipping auto-reply: message matches recently sent text")
            return

        decision: GroupDecision | None = None
        if msg.is_group:
            decision = self.gate.evaluate(msg)
            if not decision.respond:
                return

        await self.process(msg, conn, decision)

    def build_line(self, msg: InboundMessage) -> str:
        """Render the current message as an agent envelope line."""
        prefix = f"{self.settings.message_prefix} " if self.settings.message_prefix else ""
        sender_label = ""
        if msg.is_group:
            sender_label = f"{msg.sender_name or msg.sender_e164 or 'Someone'}: "
        reply_context = format_reply_context(msg)
        base_line = f"{prefix}{sender_label}{msg.body}"
        if reply_context:
            base_line = f"{base_line}\n\n{reply_context}"
        from_label = msg.from_address if msg.is_group else msg.from_address.removeprefix("whatsapp:")
        return format_agent_envelope(surface="WhatsApp", from_=from_label, timestamp=msg.timestamp, body=base_line)

    def build_combined_body(self, msg: InboundMessage, decision: GroupDecision | None) -> str:
        line = self.build_line(msg)
        if not msg.is_group:
            return line
        prior = self.history.prior_entries(
            msg.conversation_id, exclude_latest=bool(decision and decision.recorded)
        )
        combined = render_catch_up(prior, line, msg.conversation_id)
        if msg.sender_name and msg.sender_e164:
            sender_label = f"{msg.sender_name} ({msg.sender_e164})"
        else:
            sender_label = msg.sender_name or msg.sender_e164 or "Unknown"
        return f"{combined}\n[from: {sender_label}]"

    def build_envelope(self, msg: InboundMessage, body: str, decision: GroupDecision | None) -> ReplyEnvelope:
        group_members = None
        if msg.is_group:
            group_members = format_group_members(
                msg.group_participants, self.history.roster(msg.conversation_id), msg.sender_e164
            )
        return ReplyEnvelope(
            body=body,
            from_address=msg.from_address,
            to_address=msg.to_address,
            surface="whatsapp",
            chat_type=msg.chat_type,
            conversation_id=msg.conversation_id,
            message_sid=msg.id,
            raw_body=msg.body,
            command_body=decision.command_body if decision else msg.body.strip(),
            reply_to_id=msg.reply_to_id,
            reply_to_body=msg.reply_to_body,
            reply_to_sender=msg.reply_to_sender,
            media_path=msg.media_path,
            media_url=msg.media_url,
            media_type=msg.media_type,
            group_subject=msg.group_subject,
            group_members=group_members,
            sender_name=msg.sender_name,
            sender_e164=msg.sender_e164,
            was_mentioned=decision.was_mentioned if decision else None,
            is_owner=decision.is_owner if decision else self.gate.is_owner(msg),
        )

    def _direct_route_target(self, msg: InboundMessage) -> str | None:
        if msg.sender_e164:
            return normalize_e164(msg.sender_e164)
        if "@" in msg.from_address:
            return jid_to_e164(msg.from_address)
        return normalize_e164(msg.from_address)

    def _prepare_payload(self, payload: ReplyPayload, state: _TurnState) -> ReplyPayload | None:
        """Apply token handling and the response prefix; None means skip."""
        if not payload.text and not payload.has_media():
            return None
        if is_silent_payload(payload):
            return None
        text = payload.text
        if text and HEARTBEAT_TOKEN in text:
            stripped = strip_heartbeat_token(text)
            if stripped.did_strip and not state.logged_heartbeat_strip:
                state.logged_heartbeat_strip = True
                logger.debug("Stripped stray HEARTBEAT_OK token from web reply")
            if stripped.should_skip and not payload.has_media():
                return None
            text = stripped.text
        prefix = self.settings.response_prefix
        if prefix and text and text.strip() != HEARTBEAT_TOKEN and not text.startswith(prefix):
            text = f"{prefix} {text}"
        return replace(payload, text=text or None)

    async def process(self, msg: InboundMessage, conn: ConnectionContext, decision: GroupDecision | None) -> None:
        """Build the envelope, call the resolver and deliver what it returns."""
        conversation_id = msg.conversation_id or msg.from_address
        reply_to = conversation_id if msg.is_group else msg.from_address
        combined_body = self.build_combined_body(msg, decision)

        if self.echo_guard.should_suppress(combined_body):
            logger.debug("Skipping auto-reply: detected echo for combined message")
            return

        transport = msg.transport or conn.transport
        if transport is None:
            raise ListenerError("No transport available to reply on")

        correlation_id = msg.id or new_connection_id()
        from_display = conversation_id if msg.is_group else msg.from_address
        kind_label = f", {msg.media_type}" if msg.media_type else ""
        logger.info(
            f"Inbound message {from_display} -> {msg.to_address} ({msg.chat_type}{kind_label}, {len(combined_body)} chars)"
        )
        logger.debug(f"Inbound body: {elide(combined_body, 400)}")
        if self.delivery_log is not None:
            self.delivery_log.log_inbound(
                connection_id=conn.connection_id,
                correlation_id=correlation_id,
                from_address=from_display,
                to_address=msg.to_address,
                body=combined_body,
                media_type=msg.media_type,
                chat_type=msg.chat_type,
            )

        if not msg.is_group and self.session_store is not None:
            route_to = self._direct_route_target(msg)
            if route_to:
                conn.track(
                    asyncio.to_thread(
                        self.session_store.update_last_route,
                        self.settings.main_key,
                        "whatsapp",
                        route_to,
                    ),
                    label=f"last-route {route_to}",
                )

        state = _TurnState()

        async def deliver(payload: ReplyPayload) -> None:
            await deliver_web_reply(
                payload,
                reply_to,
                transport,
                max_media_bytes=self.settings.max_media_bytes,
                text_limit=self.settings.text_limit,
                echo_guard=self.echo_guard,
                delivery_log=self.delivery_log,
                connection_id=conn.connection_id,
                correlation_id=correlation_id,
                media_loader=self.media_loader,
            )
            state.did_send = True
            if payload.text:
                self.echo_guard.record_sent(payload.text)

        async def send_tool_result(payload: ReplyPayload) -> None:
            prepared = self._prepare_payload(payload, state)
            if prepared is None:
                return
            previous = state.tool_chain

            async def chained() -> None:
                if previous is not None:
                    await asyncio.gather(previous, return_exceptions=True)
                try:
                    await deliver(prepared)
                except Exception as e:
                    logger.error(f"Failed sending web tool update to {reply_to}: {format_error(e)}")

            state.tool_chain = conn.track(chained(), label=f"tool-result {correlation_id}")

        async def on_reply_start() -> None:
            try:
                await transport.send_composing(reply_to)
            except Exception as e:
                logger.debug(f"Composing indicator failed for {reply_to}: {format_error(e)}")

        envelope = self.build_envelope(msg, combined_body, decision)
        try:
            result = await self.reply_resolver(
                envelope,
                ReplyHooks(on_reply_start=on_reply_start, on_tool_result=send_tool_result),
                self.config,
            )
        except Exception as e:
            logger.error(f"Reply resolver failed for {from_display}: {format_error(e)}")
            raise

        if state.tool_chain is not None:
            await asyncio.gather(state.tool_chain, return_exceptions=True)

        payloads = [p for p in normalize_reply_result(result) if not is_silent_payload(p)]
        if not payloads:
            logger.debug("Skipping auto-reply: silent token or no text/media returned from resolver")

        for payload in payloads:
            prepared = self._prepare_payload(payload, state)
            if prepared is None:
                continue
            try:
                await deliver(prepared)
            except Exception as e:
                logger.error(f"Failed sending web auto-reply to {from_display}: {format_error(e)}")
                continue
            self.echo_guard.record_sent(combined_body)
            media_note = " (media)" if prepared.has_media() else ""
            logger.info(f"Auto-replied to {from_display}{media_note}")

        if msg.is_group and state.did_send:
            self.history.clear(conversation_id)
