"""
Tests for chat form parsing.
"""

import base64
import io

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from common.errors import InvalidInput
from common.models import ChatRole, InlineFile, RemoteFile
from gateway.media_handler import MediaHandler

PDF_B64 = base64.b64encode(b"%PDF-1.4 test").decode("ascii")


@pytest.fixture
def handler() -> MediaHandler:
    return MediaHandler(max_upload_size=64)


def upload(content: bytes, filename: str, content_type: str) -> UploadFile:
    return UploadFile(
        file=io.BytesIO(content),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


def test_parse_history_roles(handler: MediaHandler):
    """Assistant aliases map to the model role."""
    raw = '[{"role":"user","content":"hi"},{"role":"ai","content":"yo"},{"role":"assistant","content":"x"}]'

    history = handler.parse_history(raw)

    assert [turn.role for turn in history] == [ChatRole.USER, ChatRole.MODEL, ChatRole.MODEL]
    assert history[1].content == "yo"


def test_parse_history_keeps_images(handler: MediaHandler):
    """Generated images in history survive parsing."""
    history = handler.parse_history('[{"role":"model","content":"","imageBase64":"QUJD"}]')

    assert history[0].image_base64 == "QUJD"


@pytest.mark.parametrize("raw", ["not json", '{"role": "user"}', "[1, 2]"])
def test_parse_history_invalid(handler: MediaHandler, raw: str):
    """Malformed history is a client error."""
    with pytest.raises(InvalidInput, match="Invalid history format"):
        handler.parse_history(raw)


def test_parse_history_empty(handler: MediaHandler):
    """Missing history is an empty list."""
    assert handler.parse_history(None) == []
    assert handler.parse_history("  ") == []


@pytest.mark.asyncio
async def test_build_attachment_precedence(handler: MediaHandler):
    """Base64 data wins over a remote reference."""
    attachment = await handler.build_attachment(
        base64_data=PDF_B64,
        converted_type="application/pdf",
        file_uri="https://files/x",
        file_mime_type="image/png",
    )

    assert isinstance(attachment, InlineFile)
    assert attachment.mime_type == "application/pdf"


@pytest.mark.asyncio
async def test_build_attachment_remote(handler: MediaHandler):
    """A file reference becomes a remote attachment."""
    attachment = await handler.build_attachment(
        file_uri="https://files/x", file_mime_type="image/png", file_name="x.png"
    )

    assert isinstance(attachment, RemoteFile)
    assert attachment.name == "x.png"


@pytest.mark.asyncio
async def test_build_attachment_none(handler: MediaHandler):
    """Incomplete attachment fields mean no attachment."""
    assert await handler.build_attachment(base64_data=PDF_B64) is None


@pytest.mark.asyncio
async def test_build_attachment_bad_base64(handler: MediaHandler):
    """Corrupt base64 is rejected."""
    with pytest.raises(InvalidInput, match="Invalid attachment"):
        await handler.build_attachment(base64_data="@@@", converted_type="image/png")


@pytest.mark.asyncio
async def test_build_attachment_too_large(handler: MediaHandler):
    """Payloads over the limit are rejected."""
    big = base64.b64encode(b"x" * 65).decode("ascii")

    with pytest.raises(InvalidInput, match="byte limit"):
        await handler.build_attachment(base64_data=big, converted_type="image/png")


@pytest.mark.asyncio
async def test_audio_upload_wins(handler: MediaHandler):
    """A recorded voice note takes precedence over other fields."""
    attachment = await handler.build_attachment(
        base64_data=PDF_B64,
        converted_type="application/pdf",
        audio=upload(b"OggS-audio", "note.webm", "audio/webm"),
    )

    assert attachment.mime_type == "audio/webm"
    assert attachment.decoded() == b"OggS-audio"


@pytest.mark.asyncio
async def test_empty_upload_rejected(handler: MediaHandler):
    """Zero-byte uploads are rejected."""
    with pytest.raises(InvalidInput, match="is empty"):
        await handler.build_attachment(file=upload(b"", "a.txt", "text/plain"))


@pytest.mark.asyncio
async def test_inline_attachments_keep_file_name(handler: MediaHandler):
    """The client's file name travels with base64 data and raw uploads."""
    from_base64 = await handler.build_attachment(
        base64_data=PDF_B64, converted_type="application/pdf", file_name="report.pdf"
    )
    from_upload = await handler.build_attachment(file=upload(b"%PDF-1.4", "scan.pdf", "application/pdf"))

    assert from_base64.name == "report.pdf"
    assert from_upload.name == "scan.pdf"
