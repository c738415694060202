"""
Form field handling for chat requests.

Turns the history field and the attachment fields into validated models.
Following PROJECT_RULES.md:
- Single responsibility: request media/history parsing only
- Explicit errors, never silent truncation
"""

import base64
import json
from typing import Any, List, Optional

from fastapi import UploadFile
from pydantic import ValidationError

from common.errors import InvalidInput
from common.logging import get_logger
from common.models import Attachment, ChatMessage, ChatRole, InlineFile, RemoteFile

logger = get_logger(__name__)

_MODEL_ROLES = {"ai", "model", "assistant"}


class MediaHandler:
    """Builds history and attachment models from chat form fields."""

    def __init__(self, max_upload_size: int = 20 * 1024 * 1024):
        self.max_upload_size = max_upload_size

    def parse_history(self, raw: Optional[str]) -> List[ChatMessage]:
        """
        Parse the JSON history field.

        Roles `ai`, `model` and `assistant` are prior assistant turns; anything
        else is a user turn.
        """
        if not raw or not raw.strip():
            return []
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidInput("Invalid history format") from e
        if not isinstance(items, list):
            raise InvalidInput("Invalid history format")

        history = []
        for item in items:
            if not isinstance(item, dict):
                raise InvalidInput("Invalid history format")
            role = ChatRole.MODEL if str(item.get("role", "")).lower() in _MODEL_ROLES else ChatRole.USER
            content = item.get("content")
            try:
                history.append(
                    ChatMessage(
                        role=role,
                        content=content if isinstance(content, str) else "",
                        image_base64=item.get("imageBase64") or None,
                    )
                )
            except ValidationError as e:
                raise InvalidInput("Invalid history format") from e
        return history

    def inline_file(self, data: str, mime_type: str, name: Optional[str] = None) -> InlineFile:
        """Validate a base64 payload and enforce the upload size limit."""
        try:
            attachment = InlineFile(mime_type=mime_type, base64_data=data, name=name or None)
        except ValidationError as e:
            raise InvalidInput(f"Invalid attachment: {_first_error(e)}") from e

        size = len(attachment.decoded())
        if size > self.max_upload_size:
            raise InvalidInput(
                f"Attachment is {size} bytes, larger than the {self.max_upload_size} byte limit"
            )
        logger.info(event="attachment_parsed", kind="inline", mime_type=mime_type, size=size)
        return attachment

    async def read_upload(self, upload: UploadFile) -> InlineFile:
        """Base64-encode a raw multipart upload."""
        content = await upload.read(self.max_upload_size + 1)
        if not content:
            raise InvalidInput(f"Uploaded file '{upload.filename or 'file'}' is empty")
        if len(content) > self.max_upload_size:
            raise InvalidInput(
                f"Uploaded file is larger than the {self.max_upload_size} byte limit"
            )
        mime_type = upload.content_type or "application/octet-stream"
        return self.inline_file(base64.b64encode(content).decode("ascii"), mime_type, upload.filename)

    async def build_attachment(
        self,
        *,
        base64_data: Optional[str] = None,
        converted_type: Optional[str] = None,
        file_uri: Optional[str] = None,
        file_mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        file: Optional[UploadFile] = None,
        audio: Optional[UploadFile] = None,
    ) -> Optional[Attachment]:
        """
        Pick the single attachment for a request.

        Precedence: a recorded audio upload, then preprocessed base64, then a
        remote file reference, then a raw file upload.
        """
        if audio is not None:
            return await self.read_upload(audio)

        if base64_data and converted_type:
            return self.inline_file(base64_data, converted_type, file_name)

        if file_uri and file_mime_type:
            try:
                remote = RemoteFile(uri=file_uri, mime_type=file_mime_type, name=file_name or None)
            except ValidationError as e:
                raise InvalidInput(f"Invalid file reference: {_first_error(e)}") from e
            logger.info(event="attachment_parsed", kind="remote", mime_type=file_mime_type)
            return remote

        if file is not None:
            return await self.read_upload(file)

        return None


def _first_error(error: ValidationError) -> Any:
    errors = error.errors()
    return errors[0].get("msg") if errors else str(error)
