"""Reply delivery for the web surface: chunking, retry and media fallback."""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from chatrelay.bus.events import ReplyPayload, ReplyTransport
from chatrelay.observability.audit import DeliveryLog
from chatrelay.reply.chunk import chunk_text
from chatrelay.utils.helpers import elide, format_error
from chatrelay.web.echo import EchoGuard
from chatrelay.web.media import DEFAULT_MAX_MEDIA_BYTES, LoadedMedia, load_web_media

T = TypeVar("T")

WEB_TEXT_LIMIT = 4000
SEND_RETRY_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 0.5

TRANSIENT_SEND_ERROR_RE = re.compile(r"closed|reset|timed\s*out|disconnect", re.IGNORECASE)

MediaLoader = Callable[[str, int], Awaitable[LoadedMedia]]


def is_transient_send_error(error: BaseException) -> bool:
    """Connection closed/reset/timeout errors are worth retrying."""
    return bool(TRANSIENT_SEND_ERROR_RE.search(format_error(error)))


async def send_with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str,
    to: str,
    max_attempts: int = SEND_RETRY_ATTEMPTS,
) -> T:
    """
    Run a send, retrying transient failures with linear backoff.

    Args:
        fn: Zero-argument coroutine factory performing one send.
        label: Short description for logs (``text``, ``media:image``).
        to: Destination, for logs.
        max_attempts: Total attempts including the first.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        Exception: The last error, immediately if it is not transient.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or not is_transient_send_error(e):
                raise
            backoff = RETRY_BACKOFF_SECONDS * attempt
            logger.debug(
                f"Retrying {label} to {to} after failure ({attempt}/{max_attempts - 1}) "
                f"in {backoff * 1000:.0f}ms: {format_error(e)}"
            )
            await asyncio.sleep(backoff)
            attempt += 1


@dataclass
class DeliveryReport:
    """What actually went out for one payload."""

    text_sends: int = 0
    media_sends: int = 0
    fallback_sent: bool = False

    @property
    def sent_anything(self) -> bool:
        return bool(self.text_sends or self.media_sends)


async def deliver_web_reply(
    payload: ReplyPayload,
    to: str,
    transport: ReplyTransport,
    *,
    max_media_bytes: int = DEFAULT_MAX_MEDIA_BYTES,
    text_limit: int = WEB_TEXT_LIMIT,
    echo_guard: EchoGuard | None = None,
    delivery_log: DeliveryLog | None = None,
    connection_id: str | None = None,
    correlation_id: str | None = None,
    media_loader: MediaLoader | None = None,
) -> DeliveryReport:
    """
    Deliver one reply payload to a conversation.

    Text is chunked and sent in order. With media, the first item carries
    the first chunk as caption; if that item fails, the caption and a
    failure note go out as text instead, chunked like any other text.
    Failures of later media items are only logged. Leftover chunks follow the media.

    Raises:
        Exception: A text send (or the media fallback text) failed after retries.
    """
    loader = media_loader or load_web_media
    started = time.monotonic()
    report = DeliveryReport()
    chunks = chunk_text(payload.text or "", text_limit)
    media_list = payload.media_list()

    async def send_text(chunk: str, label: str = "text") -> None:
        chunk_started = time.monotonic()
        await send_with_retry(lambda: transport.send_text(to, chunk), label, to)
        report.text_sends += 1
        if echo_guard is not None:
            echo_guard.record_sent(chunk)
        if delivery_log is not None:
            delivery_log.log_delivery(
                connection_id=connection_id,
                correlation_id=correlation_id,
                to=to,
                text=chunk,
                duration_ms=(time.monotonic() - chunk_started) * 1000,
            )

    if not media_list:
        for index, chunk in enumerate(chunks, start=1):
            await send_text(chunk)
            logger.debug(f"Sent chunk {index}/{len(chunks)} to {to}")
        if chunks:
            logger.info(
                f"auto-reply sent (text) to {to} in {(time.monotonic() - started) * 1000:.0f}ms: "
                f"{elide(payload.text, 240)}"
            )
        return report

    remaining = list(chunks)
    for index, media_url in enumerate(media_list):
        caption = (remaining.pop(0) if remaining else None) if index == 0 else None
        try:
            media = await loader(media_url, max_media_bytes)
            if media.kind == "document" and not media.file_name:
                media.file_name = media_url.rstrip("/").rsplit("/", 1)[-1] or "file"
            logger.debug(f"Web auto-reply media {media_url} (kind {media.kind}, {media.size / (1024 * 1024):.2f}MB)")
            await send_with_retry(
                lambda: transport.send_media(to, media, caption),
                f"media:{media.kind}",
                to,
            )
            report.media_sends += 1
            if caption and echo_guard is not None:
                echo_guard.record_sent(caption)
            logger.info(f"Sent media reply to {to} ({media.size / (1024 * 1024):.2f}MB)")
            if delivery_log is not None:
                delivery_log.log_delivery(
                    connection_id=connection_id,
                    correlation_id=correlation_id,
                    to=to,
                    text=caption,
                    duration_ms=(time.monotonic() - started) * 1000,
                    media_url=media_url,
                    media_kind=media.kind,
                    media_size_bytes=media.size,
                )
        except Exception as e:
            logger.error(f"Failed sending web media to {to}: {format_error(e)}")
            if index == 0:
                warning = f"⚠️ Media failed: {e}" if str(e) else "⚠️ Media failed."
                fallback_text = "\n".join(part for part in (caption, warning) if part)
                for part in chunk_text(fallback_text, text_limit):
                    await send_text(part, "text:fallback")
                report.fallback_sent = True

    for chunk in remaining:
        await send_text(chunk)

    return report
