"""Tests for outbound media loading."""

from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from chatrelay.errors import MediaError
from chatrelay.web.media import LoadedMedia, load_web_media, media_kind_from_mime


def test_media_kind_from_mime():
    assert media_kind_from_mime("image/png") == "image"
    assert media_kind_from_mime("audio/ogg; codecs=opus") == "audio"
    assert media_kind_from_mime("video/mp4") == "video"
    assert media_kind_from_mime("application/pdf") == "document"
    assert media_kind_from_mime(None) == "document"


@pytest.mark.asyncio
async def test_load_local_file(tmp_path: Path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"png-bytes")
    media = await load_web_media(str(path))
    assert media.buffer == b"png-bytes"
    assert media.kind == "image"
    assert media.file_name == "photo.png"

    via_url = await load_web_media(path.as_uri())
    assert via_url.buffer == b"png-bytes"


@pytest.mark.asyncio
async def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(MediaError):
        await load_web_media(str(tmp_path / "nope.png"))


@pytest.mark.asyncio
async def test_load_remote_media():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        media = await load_web_media("https://example.com/files/report.pdf", client=client)
    assert media.kind == "document"
    assert media.content_type == "application/pdf"
    assert media.file_name == "report.pdf"


@pytest.mark.asyncio
async def test_remote_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(MediaError, match="HTTP 404"):
            await load_web_media("https://example.com/missing.png", client=client)


@pytest.mark.asyncio
async def test_oversized_media_is_rejected_or_compressed(tmp_path: Path):
    path = tmp_path / "big.jpg"
    path.write_bytes(b"x" * 100)
    with pytest.raises(MediaError, match="exceeds"):
        await load_web_media(str(path), max_bytes=10)

    compressor = AsyncMock(return_value=LoadedMedia(b"small", "image/jpeg", "image", "big.jpg"))
    media = await load_web_media(str(path), max_bytes=10, compressor=compressor)
    assert media.buffer == b"small"
    compressor.assert_awaited_once()
