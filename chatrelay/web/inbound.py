"""WhatsApp Web listener backed by the Node.js bridge over WebSocket."""

import asyncio
import json
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import websockets
from loguru import logger

from chatrelay.bus.events import DisconnectReason, InboundMessage
from chatrelay.config.schema import WebConfig
from chatrelay.errors import ListenerError
from chatrelay.utils.helpers import elide, format_error, jid_to_e164, normalize_e164
from chatrelay.web.media import LoadedMedia

OnMessage = Callable[[InboundMessage], Awaitable[None]]

GROUP_SUFFIX = "@g.us"
LOGGED_OUT_STATUS = 401
HANDLER_DRAIN_SECONDS = 30.0


def _timestamp_seconds(value: Any) -> float | None:
    if value is None:
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    return ts / 1000 if ts > 1e12 else ts


class BridgeListener:
    """
    One live bridge connection.

    Frames are JSON objects with a ``type``: ``message``, ``status``, ``qr``
    and ``error`` come in; ``auth``, ``send`` and ``presence`` go out. Each
    inbound message is handled in its own task so a slow reply never blocks
    the reader.
    """

    def __init__(self, ws: Any, on_message: OnMessage, *, verbose: bool = False) -> None:
        self._ws = ws
        self._on_message = on_message
        self.verbose = verbose
        self.self_jid: str | None = None
        self.self_e164: str | None = None
        self.on_close: asyncio.Future[DisconnectReason] = asyncio.get_running_loop().create_future()
        self._handlers: set[asyncio.Task[None]] = set()
        self._media_dir: Path | None = None
        self._closing = False
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop(), name="bridge-reader")

    def signal_close(self, reason: DisconnectReason) -> None:
        """Resolve ``on_close`` once; later signals are ignored."""
        if not self.on_close.done():
            self.on_close.set_result(reason)

    async def close(self) -> None:
        """
        Stop reading, let in-flight handlers finish, then close the socket.

        Handlers still running after ``HANDLER_DRAIN_SECONDS`` are cancelled.
        """
        if self._closing:
            return
        self._closing = True
        self._reader.cancel()
        await asyncio.gather(self._reader, return_exceptions=True)
        await self._drain_handlers()
        self._closed = True
        try:
            await self._ws.close()
        finally:
            self.signal_close(DisconnectReason(status=1000, error="closed locally"))
            if self._media_dir is not None:
                shutil.rmtree(self._media_dir, ignore_errors=True)

    async def _drain_handlers(self) -> None:
        pending = [task for task in self._handlers if task is not asyncio.current_task()]
        if not pending:
            return
        _, stuck = await asyncio.wait(pending, timeout=HANDLER_DRAIN_SECONDS)
        if stuck:
            logger.warning(f"Cancelling {len(stuck)} inbound handler(s) still running at close")
            for task in stuck:
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else None
            self.signal_close(DisconnectReason(status=code, error=f"bridge connection closed: {e}"))
            return
        except Exception as e:
            self.signal_close(DisconnectReason(status=500, error=format_error(e)))
            return
        code = getattr(self._ws, "close_code", None)
        self.signal_close(DisconnectReason(status=code, error="bridge connection closed"))

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(f"Invalid JSON from bridge: {elide(str(raw), 100)}")
            return
        if not isinstance(data, dict):
            return

        frame_type = data.get("type")
        if frame_type == "message":
            msg = self._parse_message(data)
            if msg is not None:
                task = asyncio.create_task(self._dispatch(msg))
                self._handlers.add(task)
                task.add_done_callback(self._handlers.discard)
        elif frame_type == "status":
            self._handle_status(data)
        elif frame_type == "qr":
            logger.info("Scan the QR code in the bridge terminal to link WhatsApp")
        elif frame_type == "error":
            logger.error(f"WhatsApp bridge error: {data.get('error')}")
        elif frame_type == "sent":
            logger.debug(f"Bridge confirmed send {data.get('id')}")

    def _handle_status(self, data: dict[str, Any]) -> None:
        status = str(data.get("status") or "")
        logger.info(f"WhatsApp bridge status: {status}")
        me = data.get("me") or data.get("selfJid")
        if me:
            self.self_jid = str(me)
            self.self_e164 = jid_to_e164(self.self_jid) or self.self_e164
        if data.get("selfE164"):
            self.self_e164 = normalize_e164(str(data["selfE164"]))
        if status in ("logged_out", "loggedOut"):
            self.signal_close(DisconnectReason(status=LOGGED_OUT_STATUS, logged_out=True, error="logged out"))
        elif status == "disconnected":
            code = data.get("code")
            self.signal_close(
                DisconnectReason(
                    status=int(code) if isinstance(code, (int, float)) else None,
                    error=str(data.get("reason") or "bridge reported disconnect"),
                )
            )

    def _parse_message(self, data: dict[str, Any]) -> InboundMessage | None:
        sender_jid = str(data.get("senderJid") or data.get("sender") or "")
        chat_jid = str(data.get("conversationId") or data.get("chatId") or sender_jid)
        if not chat_jid:
            return None
        is_group = bool(data.get("isGroup")) or data.get("chatType") == "group" or chat_jid.endswith(GROUP_SUFFIX)

        self_jid = str(data.get("selfJid") or self.self_jid or "") or None
        self_e164 = data.get("selfE164") or self.self_e164 or (jid_to_e164(self_jid) if self_jid else None)
        sender_e164 = data.get("senderE164") or data.get("pn") or jid_to_e164(sender_jid)
        if sender_e164:
            sender_e164 = normalize_e164(str(sender_e164))

        if data.get("fromMe") and not (sender_e164 and self_e164 and sender_e164 == normalize_e164(self_e164)):
            return None

        body = str(data.get("body") or data.get("content") or data.get("caption") or "")
        if is_group:
            from_address = chat_jid
        else:
            from_address = str(data.get("from") or sender_e164 or jid_to_e164(chat_jid) or chat_jid)
        to_address = str(data.get("to") or self_e164 or "")

        return InboundMessage(
            id=str(data["id"]) if data.get("id") is not None else None,
            from_address=from_address,
            to_address=to_address,
            body=body,
            conversation_id=chat_jid if is_group else from_address,
            chat_type="group" if is_group else "direct",
            timestamp=_timestamp_seconds(data.get("timestamp")),
            sender_jid=sender_jid or None,
            sender_e164=sender_e164 or None,
            sender_name=data.get("senderName") or data.get("pushName"),
            push_name=data.get("pushName"),
            mentioned_ids=tuple(str(j) for j in data.get("mentionedJids") or ()),
            reply_to_id=data.get("replyToId"),
            reply_to_body=data.get("replyToBody"),
            reply_to_sender=data.get("replyToSender"),
            media_type=data.get("mediaType") or data.get("mimeType"),
            media_path=data.get("mediaPath"),
            media_url=data.get("mediaUrl"),
            group_subject=data.get("groupSubject"),
            group_participants=tuple(str(p) for p in data.get("groupParticipants") or ()),
            self_jid=self_jid,
            self_e164=normalize_e164(str(self_e164)) if self_e164 else None,
            transport=self,
        )

    async def _dispatch(self, msg: InboundMessage) -> None:
        try:
            await self._on_message(msg)
        except Exception as e:
            logger.error(f"Failed handling inbound message from {msg.from_address}: {format_error(e)}")

    async def _send_frame(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise ListenerError("Bridge connection closed")
        await self._ws.send(json.dumps(payload, ensure_ascii=False))

    async def send_text(self, to: str, text: str) -> str | None:
        await self._send_frame({"type": "send", "to": to, "text": text})
        return None

    async def send_media(self, to: str, media: LoadedMedia, caption: str | None = None) -> str | None:
        """Stage media on disk for the bridge and send it with an optional caption."""
        if self._media_dir is None:
            self._media_dir = Path(tempfile.mkdtemp(prefix="chatrelay-media-"))
        name = media.file_name or f"{media.kind}-{int(time.time() * 1000)}"
        path = self._media_dir / f"{int(time.time() * 1000)}-{name}"
        await asyncio.to_thread(path.write_bytes, media.buffer)
        payload: dict[str, Any] = {
            "type": "send",
            "to": to,
            "text": caption or "",
            "caption": caption or "",
            "mediaPath": str(path),
            "mediaType": media.kind,
            "mimeType": media.content_type or "application/octet-stream",
        }
        if media.kind == "audio":
            payload["ptt"] = True
        if media.kind == "document":
            payload["fileName"] = media.file_name or "file"
        await self._send_frame(payload)
        return None

    async def send_composing(self, to: str) -> None:
        await self._send_frame({"type": "presence", "to": to, "state": "composing"})


async def connect_bridge_listener(
    web_config: WebConfig,
    on_message: OnMessage,
    verbose: bool = False,
) -> BridgeListener:
    """
    Open a bridge connection and authenticate.

    Raises:
        ListenerError: If the bridge is unreachable.
    """
    logger.info(f"Connecting to WhatsApp bridge at {web_config.bridge_url}...")
    try:
        ws = await websockets.connect(web_config.bridge_url, max_size=None)
    except (OSError, websockets.WebSocketException) as e:
        raise ListenerError(f"Failed to connect to bridge {web_config.bridge_url}: {e}") from e
    if web_config.bridge_token:
        await ws.send(json.dumps({"type": "auth", "token": web_config.bridge_token}))
        logger.debug("Sent bridge auth token")
    return BridgeListener(ws, on_message, verbose=verbose)


def bridge_listener_factory(web_config: WebConfig) -> Callable[..., Awaitable[BridgeListener]]:
    """Bind the bridge settings into a listener factory for ``WebMonitor``."""

    async def factory(on_message: OnMessage, verbose: bool = False) -> BridgeListener:
        return await connect_bridge_listener(web_config, on_message, verbose=verbose)

    return factory
