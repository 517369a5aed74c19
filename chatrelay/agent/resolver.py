"""Default reply resolver: owner commands plus an LLM turn with transcript history."""

import time
from typing import Callable

from loguru import logger

from chatrelay.bus.events import ReplyEnvelope, ReplyHooks, ReplyPayload, ReplyResult
from chatrelay.bus.queue import SystemEventQueue
from chatrelay.config.schema import Config
from chatrelay.errors import ResolverError
from chatrelay.providers.base import LLMProvider
from chatrelay.reply.activation import parse_activation_command
from chatrelay.reply.tokens import HEARTBEAT_TOKEN, SILENT_REPLY_TOKEN
from chatrelay.session.store import (
    SessionStore,
    group_session_key,
    is_group_address,
    resolve_session_key,
)
from chatrelay.session.transcript import TranscriptStore
from chatrelay.utils.helpers import format_error, normalize_e164
from chatrelay.web.mentions import is_status_command, resolve_group_activation

RESET_COMMANDS = ("/new", "/reset")


def build_system_prompt(config: Config, envelope: ReplyEnvelope) -> str:
    """Compose the system prompt for one turn."""
    defaults = config.agents.defaults
    lines = [defaults.system_prompt.strip()] if defaults.system_prompt.strip() else [
        "You are a personal assistant replying through a chat relay.",
        "Keep replies short and conversational; they are read on a phone.",
    ]
    owners = [normalize_e164(e) for e in config.web.allow_from if e != "*"]
    if owners:
        lines.append(f"Owner numbers: {', '.join(owners)}. Treat messages from these numbers as the user.")
    if envelope.is_group:
        subject = f' "{envelope.group_subject}"' if envelope.group_subject else ""
        lines.append(f"You are in the {envelope.surface} group chat{subject}.")
        if envelope.group_members:
            lines.append(f"Group members: {envelope.group_members}.")
        lines.append(
            "Earlier group messages may be included for context; answer only the current message. "
            f"If you have nothing useful to add, reply exactly {SILENT_REPLY_TOKEN}."
        )
    lines.append(f"When a heartbeat poll needs no action, reply exactly {HEARTBEAT_TOKEN}.")
    return "\n".join(lines)


class RelayReplyResolver:
    """
    Reply resolver backed by an LLM provider.

    Direct chats are answered only for allowed senders: with no allowlist
    configured that is the relay's own number. Owners can manage group
    activation, ask for status and reset the transcript with slash commands.
    """

    def __init__(
        self,
        provider: LLMProvider,
        transcripts: TranscriptStore,
        session_store: SessionStore | None = None,
        system_events: SystemEventQueue | None = None,
        status_text: Callable[[], str] | None = None,
    ) -> None:
        self.provider = provider
        self.transcripts = transcripts
        self.session_store = session_store
        self.system_events = system_events
        self.status_text = status_text

    def is_sender_allowed(self, envelope: ReplyEnvelope, config: Config) -> bool:
        if envelope.is_group or is_group_address(envelope.from_address):
            return True
        # Other surfaces apply their own allowlists before calling the resolver.
        if envelope.surface != "whatsapp":
            return True
        sender = normalize_e164(envelope.sender_e164 or envelope.from_address)
        allow_from = [str(entry) for entry in config.web.allow_from]
        if allow_from:
            return "*" in allow_from or sender in {normalize_e164(e) for e in allow_from}
        self_number = config.web.self_e164 or envelope.to_address
        return bool(self_number) and sender == normalize_e164(self_number)

    def session_key_for(self, envelope: ReplyEnvelope, config: Config) -> str:
        address = envelope.conversation_id if envelope.is_group and envelope.conversation_id else envelope.from_address
        return resolve_session_key(config.session.scope, address, config.session.main_key)

    async def __call__(self, envelope: ReplyEnvelope, hooks: ReplyHooks, config: Config) -> ReplyResult:
        if not self.is_sender_allowed(envelope, config):
            logger.debug(f"Skipping reply: sender {envelope.from_address} not allowed")
            return None

        session_key = self.session_key_for(envelope, config)
        if not hooks.is_heartbeat:
            handled, command_reply = self.handle_command(envelope, config, session_key)
            if handled:
                return command_reply

        if hooks.on_reply_start is not None:
            await hooks.on_reply_start()

        user_content = envelope.body
        if self.system_events is not None:
            events = self.system_events.drain()
            if events:
                user_content = "\n".join(f"System: {event}" for event in events) + "\n\n" + user_content

        messages = [{"role": "system", "content": build_system_prompt(config, envelope)}]
        messages.extend(self.transcripts.get_history(session_key)[-config.agents.defaults.history_turns * 2 :])
        messages.append({"role": "user", "content": user_content})

        started = time.monotonic()
        try:
            response = await self.provider.chat(
                messages,
                model=config.agents.defaults.model,
                max_tokens=config.agents.defaults.max_tokens,
                temperature=config.agents.defaults.temperature,
            )
        except Exception as e:
            raise ResolverError(f"LLM call failed: {format_error(e)}") from e
        logger.debug(f"LLM reply for {session_key} in {(time.monotonic() - started) * 1000:.0f}ms")

        text = (response.content or "").strip()
        if not text:
            return None
        if not hooks.is_heartbeat:
            self.transcripts.save_turn(session_key, envelope.body, text)
        return ReplyPayload(text=text)

    def handle_command(
        self, envelope: ReplyEnvelope, config: Config, session_key: str
    ) -> tuple[bool, ReplyPayload | None]:
        """
        Answer owner slash commands without calling the model.

        Returns:
            ``(handled, reply)``. A handled command with no reply was dropped,
            as with ``/activation`` from a non-owner in a group.
        """
        command = (envelope.command_body or envelope.raw_body or envelope.body or "").strip()
        owner_ok = envelope.is_owner or not envelope.is_group

        activation = parse_activation_command(command)
        if activation.has_command:
            if not owner_ok:
                logger.debug(f"Dropping /activation from non-owner in {envelope.conversation_id}")
                return True, None
            if not envelope.is_group or not envelope.conversation_id:
                return True, ReplyPayload(text="⚙️ Group activation only applies to group chats.")
            key = group_session_key(envelope.conversation_id)
            if activation.mode is None:
                current = resolve_group_activation(envelope.conversation_id, self.session_store, config.web.groups)
                return True, ReplyPayload(text=f"⚙️ Group activation: {current}. Usage: /activation mention|always")
            if self.session_store is None:
                return True, ReplyPayload(text="⚙️ Group activation cannot be saved: no session store.")
            self.session_store.set_group_activation(key, activation.mode)
            return True, ReplyPayload(text=f"⚙️ Group activation set to {activation.mode}.")

        if is_status_command(command) and owner_ok:
            return True, ReplyPayload(text=self.render_status(envelope, config, session_key))

        if command.lower() in RESET_COMMANDS and owner_ok:
            self.transcripts.clear(session_key)
            return True, ReplyPayload(text="⚙️ Started a new session.")

        return False, None

    def render_status(self, envelope: ReplyEnvelope, config: Config, session_key: str) -> str:
        parts = [
            f"model {config.agents.defaults.model}",
            f"session {session_key}",
            f"history {len(self.transcripts.get_history(session_key))} messages",
        ]
        if envelope.is_group and envelope.conversation_id:
            activation = resolve_group_activation(envelope.conversation_id, self.session_store, config.web.groups)
            parts.append(f"activation {activation}")
        if self.status_text is not None:
            parts.append(self.status_text())
        return "⚙️ Status: " + " · ".join(parts)
