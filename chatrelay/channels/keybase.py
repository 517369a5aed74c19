"""Keybase chat channel driven by the ``keybase chat`` JSON API."""

import asyncio
import json
import re
from typing import Any, Literal

from loguru import logger

from chatrelay.bus.events import ReplyEnvelope, ReplyHooks, ReplyResolver, normalize_reply_result
from chatrelay.channels.base import BaseChannel
from chatrelay.config.schema import Config
from chatrelay.errors import DeliveryError
from chatrelay.reply.chunk import chunk_text
from chatrelay.reply.envelope import format_agent_envelope
from chatrelay.utils.helpers import format_error

KEYBASE_TEXT_LIMIT = 10000
DEFAULT_TEAM_TOPIC = "general"

GroupPolicy = Literal["disabled", "open", "allowlist"]

_USERNAME_RE = re.compile(r"^[a-z0-9_]{2,16}$", re.IGNORECASE)


def _strip_prefix(raw: str) -> str:
    value = raw.strip()
    if value.lower().startswith("keybase:"):
        value = value[len("keybase:") :]
    return value.strip()


def normalize_keybase_handle(raw: str | None) -> str | None:
    """Lowercase a username, dropping a ``keybase:`` prefix. Empty input gives None."""
    if not raw:
        return None
    value = _strip_prefix(raw).lower()
    return value or None


def normalize_allow_entry(entry: str) -> str | None:
    if entry.strip() == "*":
        return "*"
    return normalize_keybase_handle(entry)


def normalize_keybase_target(raw: str | None) -> str | None:
    """
    Normalize an outbound target.

    ``keybase:ALICE`` becomes ``alice``; team targets keep their
    ``team:`` prefix (``keybase:team:myteam`` becomes ``team:myteam``).
    """
    if not raw:
        return None
    value = _strip_prefix(raw)
    if not value:
        return None
    if value.lower().startswith("team:"):
        team = value[len("team:") :].strip()
        return f"team:{team}" if team else None
    return value.lower()


def looks_like_keybase_target_id(raw: str | None) -> bool:
    if not raw or not raw.strip():
        return False
    value = raw.strip()
    if value.lower().startswith(("keybase:", "team:")):
        return True
    return bool(_USERNAME_RE.match(value))


def is_sender_allowed(username: str | None, allow_from: list[str]) -> bool:
    """True if ``username`` is on the allowlist. An empty list allows nobody."""
    if not username:
        return False
    entries = {normalize_allow_entry(str(e)) for e in allow_from}
    if "*" in entries:
        return True
    return username.lower() in entries


def is_group_allowed(group_policy: GroupPolicy, allow_from: list[str], username: str | None) -> bool:
    if group_policy == "disabled":
        return False
    if group_policy == "open":
        return True
    return is_sender_allowed(username, allow_from)


def channel_for_target(target: str) -> dict[str, Any]:
    """Build the ``channel`` object for a normalized target (``team:name#topic`` or username)."""
    if target.startswith("team:"):
        team, _, topic = target[len("team:") :].partition("#")
        return {"name": team, "members_type": "team", "topic_name": topic or DEFAULT_TEAM_TOPIC}
    return {"name": target}


class KeybaseChannel(BaseChannel):
    """
    Keybase chat integration.

    Reads ``keybase chat api-listen`` JSON lines from a subprocess and sends
    replies through ``keybase chat api``. Direct messages are checked
    against ``allow_from``; team messages against ``group_policy`` and need
    an ``@username`` mention unless ``require_mention`` is off.
    """

    def __init__(self, reply_resolver: ReplyResolver, config: Config) -> None:
        super().__init__(reply_resolver, config)
        self.keybase = config.channels.keybase
        self.binary = self.keybase.binary
        self.username: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return "keybase"

    async def _exec(self, *args: str, stdin: str | None = None) -> str:
        process = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate(stdin.encode() if stdin is not None else None)
        if process.returncode != 0:
            raise DeliveryError(
                f"keybase {' '.join(args)} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")

    async def api(self, method: str, options: dict[str, Any]) -> dict[str, Any]:
        """Call ``keybase chat api`` with one JSON request."""
        request = json.dumps({"method": method, "params": {"options": options}})
        output = await self._exec("chat", "api", stdin=request)
        response = json.loads(output or "{}")
        if response.get("error"):
            raise DeliveryError(f"keybase chat api {method} failed: {response['error'].get('message')}")
        return response.get("result") or {}

    async def start(self) -> None:
        try:
            self.username = (await self._exec("whoami")).strip().lower() or None
        except (OSError, DeliveryError) as e:
            logger.warning(f"Keybase is not available: {format_error(e)}. Channel disabled.")
            return

        self._process = await asyncio.create_subprocess_exec(
            self.binary,
            "chat",
            "api-listen",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._reader_task = asyncio.create_task(self._read_events())
        logger.info(f"Keybase channel started as {self.username}.")

    async def stop(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._process and self._process.returncode is None:
            self._process.terminate()
            await self._process.wait()
        self._process = None
        logger.info("Keybase channel stopped.")

    async def send_message(self, chat_id: str, content: str) -> None:
        target = normalize_keybase_target(chat_id)
        if not target:
            raise DeliveryError(f"Invalid Keybase target: {chat_id!r}")
        await self.send_to_channel(channel_for_target(target), content)

    async def send_to_channel(self, channel: dict[str, Any], text: str) -> None:
        for chunk in chunk_text(text, KEYBASE_TEXT_LIMIT):
            await self.api("send", {"channel": channel, "message": {"body": chunk}})

    async def _read_events(self) -> None:
        if self._process is None or self._process.stdout is None:
            return
        while True:
            line = await self._process.stdout.readline()
            if not line:
                logger.warning("keybase api-listen exited")
                break
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON keybase line: {line[:120]!r}")
                continue
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Keybase handler failed: {format_error(e)}")

    async def handle_event(self, event: dict[str, Any]) -> None:
        """Handle one ``api-listen`` event."""
        if event.get("type") != "chat":
            return
        msg = event.get("msg") or {}
        content = msg.get("content") or {}
        if content.get("type") != "text":
            return
        body = ((content.get("text") or {}).get("body") or "").strip()
        sender = normalize_keybase_handle((msg.get("sender") or {}).get("username"))
        channel = msg.get("channel") or {}
        if not body or not sender or sender == self.username:
            return

        is_group = channel.get("members_type") == "team"
        if is_group:
            allow = self.keybase.group_allow_from or self.keybase.allow_from
            if not is_group_allowed(self.keybase.group_policy, allow, sender):
                logger.info(f"Blocked keybase team message from {sender} (group_policy={self.keybase.group_policy})")
                return
            if self.keybase.require_mention and self.username and f"@{self.username}" not in body.lower():
                logger.debug(f"Skipping keybase team message in {channel.get('name')}: no-mention")
                return
        elif not is_sender_allowed(sender, self.keybase.allow_from):
            logger.warning(f"Blocked unauthorized keybase sender {sender} (not in allow_from)")
            return

        team_label = f"{channel.get('name')}#{channel.get('topic_name') or DEFAULT_TEAM_TOPIC}"
        conversation = f"group:{team_label}" if is_group else None
        sent_at = msg.get("sent_at")
        envelope = ReplyEnvelope(
            body=format_agent_envelope(
                "Keybase",
                body,
                from_=team_label if is_group else sender,
                timestamp=float(sent_at) if sent_at else None,
            ),
            from_address=conversation or f"keybase:{sender}",
            to_address=f"keybase:{self.username or ''}",
            surface="keybase",
            chat_type="group" if is_group else "direct",
            conversation_id=conversation,
            message_sid=str(msg.get("id")) if msg.get("id") is not None else None,
            raw_body=body,
            group_subject=team_label if is_group else None,
            sender_name=sender,
            was_mentioned=True if is_group and self.keybase.require_mention else None,
        )

        result = await self.reply_resolver(envelope, ReplyHooks(), self.config)
        for payload in normalize_reply_result(result):
            if payload.has_media():
                logger.warning("Keybase replies are text only; dropping media")
            if payload.text:
                await self.send_to_channel(channel, payload.text)
