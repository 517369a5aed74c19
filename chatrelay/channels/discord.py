"""Outbound Discord sends over the REST API."""

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx
from loguru import logger

from chatrelay.bus.events import ReplyResolver
from chatrelay.channels.base import BaseChannel
from chatrelay.config.schema import Config
from chatrelay.errors import ConfigError, DeliveryError
from chatrelay.reply.chunk import chunk_text
from chatrelay.web.delivery import MediaLoader
from chatrelay.web.media import load_web_media

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_TEXT_LIMIT = 2000

_MENTION_RE = re.compile(r"^<@!?(\d+)>$")
_CUSTOM_EMOJI_RE = re.compile(r"^<a?:([^:>]+):(\d+)>$")


@dataclass(frozen=True)
class DiscordRecipient:
    kind: Literal["user", "channel"]
    id: str


@dataclass(frozen=True)
class DiscordSendResult:
    message_id: str
    channel_id: str


def normalize_discord_token(raw: str | None) -> str | None:
    if not raw:
        return None
    token = raw.strip()
    if token.lower().startswith("bot "):
        token = token[4:].strip()
    return token or None


def resolve_discord_token(explicit: str | None = None, config: Config | None = None) -> str:
    """
    Pick the bot token from the argument, ``DISCORD_BOT_TOKEN`` or config.

    Raises:
        ConfigError: If no token is available.
    """
    configured = config.channels.discord.token if config is not None else None
    token = normalize_discord_token(explicit or os.environ.get("DISCORD_BOT_TOKEN") or configured)
    if not token:
        raise ConfigError("DISCORD_BOT_TOKEN or channels.discord.token is required for Discord sends")
    return token


def parse_recipient(raw: str) -> DiscordRecipient:
    """
    Parse a send target.

    Accepts ``<@id>``/``<@!id>`` mentions, ``user:``, ``channel:`` and
    ``discord:`` prefixes, ``@<digits>`` and bare channel ids.

    Raises:
        ValueError: If the target is empty or an ``@`` target is not numeric.
    """
    target = raw.strip()
    if not target:
        raise ValueError("Recipient is required for Discord sends")
    mention = _MENTION_RE.match(target)
    if mention:
        return DiscordRecipient("user", mention.group(1))
    if target.startswith("user:"):
        return DiscordRecipient("user", target[len("user:") :])
    if target.startswith("channel:"):
        return DiscordRecipient("channel", target[len("channel:") :])
    if target.startswith("discord:"):
        return DiscordRecipient("user", target[len("discord:") :])
    if target.startswith("@"):
        candidate = target[1:]
        if not candidate.isdigit():
            raise ValueError("Discord DMs require a user id (use user:<id> or a <@id> mention)")
        return DiscordRecipient("user", candidate)
    return DiscordRecipient("channel", target)


def normalize_reaction_emoji(raw: str) -> str:
    """URL-encode a unicode emoji or a ``<:name:id>`` custom emoji as ``name:id``."""
    emoji = raw.strip()
    if not emoji:
        raise ValueError("emoji required")
    custom = _CUSTOM_EMOJI_RE.match(emoji)
    identifier = f"{custom.group(1)}:{custom.group(2)}" if custom else emoji
    return quote(identifier, safe="")


class DiscordRest:
    """Minimal Discord REST client."""

    def __init__(self, token: str, client: httpx.AsyncClient | None = None) -> None:
        self.token = token
        self._client = client

    async def request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bot {self.token}"}
        if self._client is not None:
            response = await self._client.request(method, f"{DISCORD_API_BASE}{path}", headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.request(method, f"{DISCORD_API_BASE}{path}", headers=headers, **kwargs)
        if response.status_code >= 400:
            raise DeliveryError(f"Discord {method} {path} failed: HTTP {response.status_code} {response.text[:200]}")
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


async def _resolve_channel_id(rest: DiscordRest, recipient: DiscordRecipient) -> str:
    if recipient.kind == "channel":
        return recipient.id
    dm = await rest.request("POST", "/users/@me/channels", json={"recipient_id": recipient.id})
    if not dm.get("id"):
        raise DeliveryError("Failed to create Discord DM channel")
    return str(dm["id"])


def _message_reference(reply_to: str | None) -> dict[str, Any] | None:
    return {"message_id": reply_to, "fail_if_not_exists": False} if reply_to else None


async def _send_text(rest: DiscordRest, channel_id: str, text: str, reply_to: str | None = None) -> dict[str, Any]:
    if not text.strip():
        raise ValueError("Message must be non-empty for Discord sends")
    last: dict[str, Any] | None = None
    for index, chunk in enumerate(chunk_text(text, DISCORD_TEXT_LIMIT)):
        body: dict[str, Any] = {"content": chunk}
        reference = _message_reference(reply_to) if index == 0 else None
        if reference:
            body["message_reference"] = reference
        last = await rest.request("POST", f"/channels/{channel_id}/messages", json=body)
    if last is None:
        raise DeliveryError("Discord send failed (empty chunk result)")
    return last


async def _send_media(
    rest: DiscordRest,
    channel_id: str,
    text: str,
    media_url: str,
    media_loader: MediaLoader,
    max_bytes: int,
    reply_to: str | None = None,
) -> dict[str, Any]:
    media = await media_loader(media_url, max_bytes)
    caption = text[:DISCORD_TEXT_LIMIT]
    payload: dict[str, Any] = {}
    if caption:
        payload["content"] = caption
    reference = _message_reference(reply_to)
    if reference:
        payload["message_reference"] = reference
    result = await rest.request(
        "POST",
        f"/channels/{channel_id}/messages",
        data={"payload_json": json.dumps(payload)},
        files={"files[0]": (media.file_name or "upload", media.buffer, media.content_type or "application/octet-stream")},
    )
    remaining = text[DISCORD_TEXT_LIMIT:].strip()
    if remaining:
        await _send_text(rest, channel_id, remaining)
    return result


async def send_message_discord(
    to: str,
    text: str,
    *,
    token: str | None = None,
    config: Config | None = None,
    media_url: str | None = None,
    reply_to: str | None = None,
    rest: DiscordRest | None = None,
    media_loader: MediaLoader | None = None,
    max_media_bytes: int = 8 * 1024 * 1024,
) -> DiscordSendResult:
    """
    Send text (and optionally one media item) to a Discord user or channel.

    Args:
        to: Recipient, see ``parse_recipient``.
        text: Message text; chunked at 2000 characters.
        token: Bot token override.
        config: Config used for token lookup.
        media_url: Optional media to upload with the first slice of text as caption.
        reply_to: Message id to quote on the first message.
        rest: Prebuilt REST client.
        media_loader: Loader used for ``media_url``.
        max_media_bytes: Upload cap.

    Returns:
        Message and channel ids of the last message sent.
    """
    client = rest or DiscordRest(resolve_discord_token(token, config))
    recipient = parse_recipient(to)
    channel_id = await _resolve_channel_id(client, recipient)

    if media_url:
        result = await _send_media(
            client, channel_id, text, media_url, media_loader or load_web_media, max_media_bytes, reply_to
        )
    else:
        result = await _send_text(client, channel_id, text, reply_to)

    return DiscordSendResult(
        message_id=str(result.get("id") or "unknown"),
        channel_id=str(result.get("channel_id") or channel_id),
    )


async def react_message_discord(
    channel_id: str,
    message_id: str,
    emoji: str,
    *,
    token: str | None = None,
    config: Config | None = None,
    rest: DiscordRest | None = None,
) -> bool:
    client = rest or DiscordRest(resolve_discord_token(token, config))
    encoded = normalize_reaction_emoji(emoji)
    await client.request("PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{encoded}/@me")
    return True


class DiscordChannel(BaseChannel):
    """Outbound-only Discord channel."""

    def __init__(self, reply_resolver: ReplyResolver, config: Config, rest: DiscordRest | None = None) -> None:
        super().__init__(reply_resolver, config)
        self.rest = rest

    @property
    def name(self) -> str:
        return "discord"

    async def start(self) -> None:
        if self.rest is None:
            self.rest = DiscordRest(resolve_discord_token(config=self.config))
        logger.info("Discord channel ready (outbound only).")

    async def stop(self) -> None:
        self.rest = None

    async def send_message(self, chat_id: str, content: str) -> None:
        if self.rest is None:
            logger.warning("Cannot send Discord message: channel not running.")
            return
        result = await send_message_discord(chat_id, content, rest=self.rest)
        logger.debug(f"Discord message {result.message_id} sent to channel {result.channel_id}")
