"""Telegram channel implementation using raw HTTP polling."""

import asyncio
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from chatrelay.bus.events import ReplyEnvelope, ReplyHooks, ReplyPayload, ReplyResolver, normalize_reply_result
from chatrelay.channels.base import BaseChannel
from chatrelay.config.schema import Config
from chatrelay.errors import DeliveryError, MediaError
from chatrelay.reply.chunk import chunk_text
from chatrelay.reply.envelope import format_agent_envelope
from chatrelay.session.store import SessionStore
from chatrelay.utils.helpers import elide, format_error
from chatrelay.web.delivery import MediaLoader
from chatrelay.web.media import load_web_media

TELEGRAM_TEXT_LIMIT = 4000
PARSE_ERR_RE = re.compile(r"can't parse entities|parse entities|find end of the entity", re.IGNORECASE)

_SEND_METHODS = {
    "image": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "audio": ("sendAudio", "audio"),
    "document": ("sendDocument", "document"),
}


@dataclass(frozen=True)
class ReplyTarget:
    id: str | None
    sender: str
    body: str


@dataclass(frozen=True)
class TelegramMedia:
    path: str
    content_type: str | None
    placeholder: str


_MEDIA_PLACEHOLDERS = (
    ("photo", "<media:image>"),
    ("video", "<media:video>"),
    ("audio", "<media:audio>"),
    ("voice", "<media:audio>"),
    ("document", "<media:document>"),
)


def media_placeholder(message: dict[str, Any]) -> str | None:
    for key, placeholder in _MEDIA_PLACEHOLDERS:
        if message.get(key) is not None:
            return placeholder
    return None


def _full_name(sender: dict[str, Any]) -> str:
    return " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p).strip()


def build_sender_name(message: dict[str, Any]) -> str | None:
    sender = message.get("from") or {}
    return _full_name(sender) or sender.get("username") or None


def build_sender_label(message: dict[str, Any], chat_id: int | str) -> str:
    sender = message.get("from") or {}
    name = _full_name(sender)
    username = sender.get("username")
    handle = f"@{username}" if username else None
    label = name
    if name and handle:
        label = f"{name} ({handle})"
    elif handle:
        label = handle
    return f"{label} id:{chat_id}" if label else f"id:{chat_id}"


def build_group_label(message: dict[str, Any], chat_id: int | str) -> str:
    title = (message.get("chat") or {}).get("title")
    return f"{title} id:{chat_id}" if title else f"group:{chat_id}"


def has_bot_mention(message: dict[str, Any], bot_username: str) -> bool:
    """True if the text mentions ``@bot_username`` or carries a matching mention entity."""
    raw = message.get("text") or message.get("caption") or ""
    handle = f"@{bot_username.lower()}"
    if handle in raw.lower():
        return True
    for entity in message.get("entities") or message.get("caption_entities") or []:
        if entity.get("type") != "mention":
            continue
        offset = int(entity.get("offset", 0))
        mention = raw[offset : offset + int(entity.get("length", 0))]
        if mention.lower() == handle:
            return True
    return False


def describe_reply_target(message: dict[str, Any]) -> ReplyTarget | None:
    reply = message.get("reply_to_message")
    if not reply:
        return None
    body = (reply.get("text") or reply.get("caption") or "").strip() or media_placeholder(reply)
    if not body:
        return None
    message_id = reply.get("message_id")
    return ReplyTarget(
        id=str(message_id) if message_id else None,
        sender=build_sender_name(reply) or "unknown sender",
        body=body,
    )


def is_telegram_sender_allowed(
    allow_from: list[str] | list[int | str],
    chat_id: int | str,
    username: str | None = None,
) -> bool:
    """
    Check a direct-chat sender against the allowlist.

    Entries may be ``*``, numeric chat ids, ``@username`` or bare usernames,
    optionally prefixed with ``telegram:``. An empty list allows everyone.
    """
    if not allow_from:
        return True
    entries = set()
    for raw in allow_from:
        entry = str(raw).strip()
        if entry.lower().startswith("telegram:"):
            entry = entry[len("telegram:") :]
        entries.add(entry.lower())
    if "*" in entries or str(chat_id) in entries:
        return True
    if username:
        name = username.lower()
        return name in entries or f"@{name}" in entries
    return False


def resolve_reply_to_id(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class TelegramChannel(BaseChannel):
    """
    Telegram integration channel.

    Uses httpx for long-polling the getUpdates endpoint. Direct chats are
    checked against ``channels.telegram.allow_from``; group messages need a
    bot mention unless ``require_mention`` is off.
    """

    def __init__(
        self,
        reply_resolver: ReplyResolver,
        config: Config,
        session_store: SessionStore | None = None,
        media_loader: MediaLoader | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(reply_resolver, config)
        self.telegram = config.channels.telegram
        self.bot_token = self.telegram.token
        self.api_url = f"https://api.telegram.org/bot{self.bot_token}"
        self.session_store = session_store
        self.media_loader = media_loader or load_web_media
        self.max_media_bytes = int(config.agents.defaults.media_max_mb * 1024 * 1024)
        self.bot_username: str | None = None

        self._running = False
        self._offset = 0
        self._client = client
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return "telegram"

    async def start(self) -> None:
        """Initialize the client, look up the bot name and start polling."""
        if not self.bot_token:
            logger.warning("Telegram token is empty. Channel disabled.")
            return

        self._running = True
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0)
        try:
            me = await self._call("getMe")
            self.bot_username = (me.get("username") or "").lower() or None
        except Exception as e:
            logger.warning(f"Telegram getMe failed; group mention gating disabled: {format_error(e)}")
        self._poll_task = asyncio.create_task(self._poll_updates())
        logger.info(f"Telegram channel started as @{self.bot_username or 'unknown'}.")

    async def stop(self) -> None:
        """Stop polling and close the client."""
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass

        if self._client:
            await self._client.aclose()
            self._client = None

        logger.info("Telegram channel stopped.")

    async def send_message(self, chat_id: str, content: str) -> None:
        """Send a message to a specific Telegram chat_id."""
        if not self._client:
            logger.warning("Cannot send Telegram message: channel not running.")
            return

        try:
            for chunk in chunk_text(content, TELEGRAM_TEXT_LIMIT):
                await self.send_text(chat_id, chunk)
        except Exception as e:
            logger.error(f"Failed to send Telegram message to {chat_id}: {e}")

    async def _call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self._client is None:
            raise DeliveryError("Telegram client is not running")
        url = f"{self.api_url}/{method}"
        if files:
            data = {k: str(v) for k, v in (payload or {}).items() if v is not None}
            response = await self._client.post(url, data=data, files=files, timeout=60.0)
        else:
            body = {k: v for k, v in (payload or {}).items() if v is not None}
            response = await self._client.post(url, json=body, timeout=10.0)
        data = response.json()
        if not data.get("ok"):
            description = data.get("description") or f"HTTP {response.status_code}"
            raise DeliveryError(f"Telegram {method} failed: {description}")
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    async def send_text(self, chat_id: str, text: str, reply_to_message_id: int | None = None) -> int | None:
        """Send Markdown text, retrying as plain text when Telegram rejects the markup."""
        try:
            result = await self._call(
                "sendMessage",
                {
                    "chat_id": chat_id,
                    "text": text,
                    "parse_mode": "Markdown",
                    "reply_to_message_id": reply_to_message_id,
                },
            )
        except DeliveryError as e:
            if not PARSE_ERR_RE.search(str(e)):
                raise
            logger.info(f"telegram markdown parse failed; retrying without formatting: {e}")
            result = await self._call(
                "sendMessage",
                {"chat_id": chat_id, "text": text, "reply_to_message_id": reply_to_message_id},
            )
        return result.get("message_id")

    async def send_typing(self, chat_id: str) -> None:
        try:
            await self._call("sendChatAction", {"chat_id": chat_id, "action": "typing"})
        except Exception as e:
            logger.debug(f"telegram typing cue failed for chat {chat_id}: {e}")

    async def deliver_replies(
        self, replies: list[ReplyPayload], chat_id: str, reply_to_message_id: int | None = None
    ) -> None:
        """
        Send resolver replies to a chat.

        Text is chunked; media is sent with the reply text as caption on the
        first item. ``reply_to_mode`` decides whether only the first send or
        every send quotes the original message. A reply without its own
        ``reply_to_id`` quotes ``reply_to_message_id``.
        """
        mode = self.telegram.reply_to_mode
        has_replied = False
        for reply in replies:
            if not reply.text and not reply.has_media():
                logger.error("reply missing text/media")
                continue
            reply_to = None if mode == "off" else resolve_reply_to_id(reply.reply_to_id) or reply_to_message_id

            def quote() -> int | None:
                return reply_to if reply_to and (mode == "all" or not has_replied) else None

            media_list = reply.media_list()
            if not media_list:
                for chunk in chunk_text(reply.text or "", TELEGRAM_TEXT_LIMIT):
                    await self.send_text(chat_id, chunk, reply_to_message_id=quote())
                    if reply_to:
                        has_replied = True
                continue

            for index, url in enumerate(media_list):
                media = await self.media_loader(url, self.max_media_bytes)
                method, field = _SEND_METHODS[media.kind]
                files = {field: (media.file_name or "file", media.buffer, media.content_type or "application/octet-stream")}
                await self._call(
                    method,
                    {
                        "chat_id": chat_id,
                        "caption": reply.text if index == 0 else None,
                        "reply_to_message_id": quote(),
                    },
                    files=files,
                )
                if reply_to:
                    has_replied = True

    async def _poll_updates(self) -> None:
        """Long-polling loop for receiving updates."""
        if not self._client:
            return

        url = f"{self.api_url}/getUpdates"

        while self._running:
            try:
                payload: dict[str, Any] = {"offset": self._offset, "timeout": 30}
                response = await self._client.get(url, params=payload, timeout=40.0)

                if response.status_code != 200:
                    logger.warning(f"Telegram polling returned HTTP {response.status_code}")
                    await asyncio.sleep(2)
                    continue

                data = response.json()
                if not data.get("ok"):
                    logger.error(f"Telegram API error: {data.get('description')}")
                    await asyncio.sleep(2)
                    continue

                for update in data.get("result", []):
                    self._offset = max(self._offset, update["update_id"] + 1)
                    await self._process_update(update)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Telegram polling error: {e}")
                await asyncio.sleep(2)

    async def _resolve_media(self, message: dict[str, Any]) -> TelegramMedia | None:
        photos = message.get("photo") or []
        item = (photos[-1] if photos else None) or message.get("video") or message.get("document") or message.get("audio") or message.get("voice")
        if not item or not item.get("file_id"):
            return None
        file_info = await self._call("getFile", {"file_id": item["file_id"]})
        file_path = file_info.get("file_path")
        if not file_path:
            raise MediaError("Telegram getFile returned no file_path")

        if self._client is None:
            raise MediaError("Telegram client is not running")
        response = await self._client.get(f"https://api.telegram.org/file/bot{self.bot_token}/{file_path}")
        if response.status_code >= 400:
            raise MediaError(f"Failed to download telegram file: HTTP {response.status_code}")
        data = response.content
        if len(data) > self.max_media_bytes:
            raise MediaError(f"Telegram media exceeds {self.max_media_bytes} bytes")

        content_type = response.headers.get("content-type") or mimetypes.guess_type(file_path)[0]
        target_dir = self.config.data_path / "media" / "inbound"
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{uuid.uuid4().hex}{Path(file_path).suffix}"
        await asyncio.to_thread(target.write_bytes, data)
        return TelegramMedia(
            path=str(target),
            content_type=content_type,
            placeholder=media_placeholder(message) or "<media:document>",
        )

    async def _process_update(self, update: dict[str, Any]) -> None:
        """Process a single incoming Telegram update; failures are logged."""
        message = update.get("message")
        if not message:
            return
        try:
            await self._handle_message(message)
        except Exception as e:
            logger.error(f"Telegram handler failed: {format_error(e)}")

    async def _handle_message(self, message: dict[str, Any]) -> None:
        chat = message.get("chat") or {}
        chat_id = chat.get("id")
        is_group = chat.get("type") in ("group", "supergroup")
        username = (message.get("from") or {}).get("username")

        if not is_group and not is_telegram_sender_allowed(self.telegram.allow_from, chat_id, username):
            logger.warning(f"Blocked unauthorized telegram sender {chat_id} (not in allow_from)")
            return

        was_mentioned = bool(self.bot_username) and has_bot_mention(message, self.bot_username or "")
        if is_group and self.telegram.require_mention and self.bot_username and not was_mentioned:
            logger.info(f"Skipping telegram group message in {chat_id}: no-mention")
            return

        media = await self._resolve_media(message)
        reply_target = describe_reply_target(message)
        raw_body = (message.get("text") or message.get("caption") or (media.placeholder if media else "")).strip()
        if not raw_body:
            return

        suffix = ""
        if reply_target:
            id_part = f" id:{reply_target.id}" if reply_target.id else ""
            suffix = f"\n\n[Replying to {reply_target.sender}{id_part}]\n{reply_target.body}\n[/Replying]"
        timestamp = message.get("date")
        body = format_agent_envelope(
            "Telegram",
            f"{raw_body}{suffix}",
            from_=build_group_label(message, chat_id) if is_group else build_sender_label(message, chat_id),
            timestamp=float(timestamp) if timestamp else None,
        )
        envelope = ReplyEnvelope(
            body=body,
            from_address=f"group:{chat_id}" if is_group else f"telegram:{chat_id}",
            to_address=f"telegram:{chat_id}",
            surface="telegram",
            chat_type="group" if is_group else "direct",
            conversation_id=f"group:{chat_id}" if is_group else None,
            message_sid=str(message.get("message_id")),
            raw_body=raw_body,
            reply_to_id=reply_target.id if reply_target else None,
            reply_to_body=reply_target.body if reply_target else None,
            reply_to_sender=reply_target.sender if reply_target else None,
            media_path=media.path if media else None,
            media_url=media.path if media else None,
            media_type=media.content_type if media else None,
            group_subject=chat.get("title") if is_group else None,
            sender_name=build_sender_name(message),
            was_mentioned=was_mentioned if is_group and self.bot_username else None,
        )

        if not is_group and self.session_store is not None:
            await asyncio.to_thread(
                self.session_store.update_last_route,
                self.config.session.main_key,
                "telegram",
                str(chat_id),
            )

        logger.debug(f"telegram inbound: chatId={chat_id} from={envelope.from_address} len={len(body)} preview=\"{elide(body, 200)}\"")

        result = await self.reply_resolver(
            envelope,
            ReplyHooks(on_reply_start=lambda: self.send_typing(str(chat_id))),
            self.config,
        )
        replies = normalize_reply_result(result)
        if replies:
            await self.deliver_replies(replies, str(chat_id), resolve_reply_to_id(envelope.message_sid))
