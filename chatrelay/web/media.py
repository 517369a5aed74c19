"""Load outbound media from URLs or local paths."""

import asyncio
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Literal
from urllib.parse import unquote, urlparse

import httpx
from loguru import logger

from chatrelay.errors import MediaError

MediaKind = Literal["image", "audio", "video", "document"]

DEFAULT_MAX_MEDIA_BYTES = 5 * 1024 * 1024


@dataclass
class LoadedMedia:
    """Media bytes ready to be sent."""

    buffer: bytes
    content_type: str | None
    kind: MediaKind
    file_name: str | None = None

    @property
    def size(self) -> int:
        return len(self.buffer)


Compressor = Callable[[LoadedMedia, int], Awaitable[LoadedMedia]]


def media_kind_from_mime(content_type: str | None) -> MediaKind:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("audio/"):
        return "audio"
    if mime.startswith("video/"):
        return "video"
    return "document"


def _file_name_from(source: str) -> str | None:
    path = unquote(urlparse(source).path) if "://" in source else source
    name = Path(path).name
    return name or None


async def _fetch_remote(url: str, client: httpx.AsyncClient | None) -> tuple[bytes, str | None]:
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    try:
        response = await http.get(url)
        if response.status_code >= 400:
            raise MediaError(f"Failed to fetch media from {url}: HTTP {response.status_code}")
        return response.content, response.headers.get("content-type")
    except httpx.HTTPError as e:
        raise MediaError(f"Failed to fetch media from {url}: {e}") from e
    finally:
        if owns_client:
            await http.aclose()


async def load_web_media(
    source: str,
    max_bytes: int | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    compressor: Compressor | None = None,
) -> LoadedMedia:
    """
    Load media referenced by a reply.

    Args:
        source: ``http(s)://`` URL, ``file://`` URL or local path.
        max_bytes: Size cap. Oversized media is passed to ``compressor``
            when one is given, otherwise rejected.
        client: Optional shared HTTP client.
        compressor: Async callable shrinking media to a byte budget.

    Returns:
        The loaded media.

    Raises:
        MediaError: If the media cannot be read or stays over the cap.
    """
    limit = max_bytes or DEFAULT_MAX_MEDIA_BYTES
    source = source.strip()
    if source.startswith(("http://", "https://")):
        buffer, content_type = await _fetch_remote(source, client)
    else:
        path = Path(unquote(urlparse(source).path) if source.startswith("file://") else source).expanduser()
        try:
            buffer = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise MediaError(f"Failed to read media {path}: {e}") from e
        content_type = None

    file_name = _file_name_from(source)
    if not content_type and file_name:
        content_type = mimetypes.guess_type(file_name)[0]

    media = LoadedMedia(
        buffer=buffer,
        content_type=content_type,
        kind=media_kind_from_mime(content_type),
        file_name=file_name,
    )

    if media.size > limit:
        if compressor is None:
            raise MediaError(f"Media exceeds {limit / (1024 * 1024):.0f}MB limit (got {media.size / (1024 * 1024):.2f}MB)")
        logger.debug(f"Compressing {file_name or source}: {media.size} bytes over {limit}")
        media = await compressor(media, limit)
        if media.size > limit:
            raise MediaError(f"Media still exceeds {limit / (1024 * 1024):.0f}MB limit after compression")

    return media
