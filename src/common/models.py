"""
Shared data models for the streaming gateway.

Following PROJECT_RULES.md:
- Single responsibility per file
- Pydantic models for data validation
- Type hints throughout
"""

import base64
import binascii
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatRole(str, Enum):
    """Roles in a caller-supplied conversation history."""

    USER = "user"
    MODEL = "model"


class ChatMessage(BaseModel):
    """One prior turn of the conversation. Role `model` is a previous assistant turn."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    role: ChatRole
    content: str = ""
    # Set when an assistant turn produced an image (used for iterative image editing)
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")


class InlineFile(BaseModel):
    """Attachment bytes embedded in the request as base64."""

    kind: Literal["inline"] = "inline"
    mime_type: str
    base64_data: str
    name: Optional[str] = None

    @field_validator("base64_data")
    @classmethod
    def _check_payload(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Attachment payload is empty")
        try:
            decoded = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Attachment payload is not valid base64: {e}") from e
        if not decoded:
            raise ValueError("Attachment payload decodes to zero bytes")
        return value

    def decoded(self) -> bytes:
        return base64.b64decode(self.base64_data)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


class RemoteFile(BaseModel):
    """Attachment the backend fetches by reference."""

    kind: Literal["remote"] = "remote"
    uri: str = Field(min_length=1)
    mime_type: str
    name: Optional[str] = None


Attachment = Annotated[Union[InlineFile, RemoteFile], Field(discriminator="kind")]


def is_image(attachment: Optional[Attachment]) -> bool:
    return attachment is not None and attachment.mime_type.startswith("image/")


def is_audio(attachment: Optional[Attachment]) -> bool:
    return attachment is not None and attachment.mime_type.startswith("audio/")


class JobStatus(str, Enum):
    """Lifecycle states reported by the async job backend."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class AsyncJob(BaseModel):
    """
    Long-running generation job observed (never mutated) by the gateway.

    The caller polls the job status endpoint with `id` after the gateway returns.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    status: JobStatus
    output: Optional[Any] = None
    error: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("error", mode="before")
    @classmethod
    def _stringify_error(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class RelatedVideo(BaseModel):
    """Video suggestion attached to an answer."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    video_id: str = Field(alias="videoId")
    thumbnail_url: str = Field(alias="thumbnailUrl")
    channel_title: str = Field(alias="channelTitle")
    duration: Optional[str] = None
    view_count: Optional[str] = Field(default=None, alias="viewCount")
    published_at: Optional[str] = Field(default=None, alias="publishedAt")


class PayloadChunk(BaseModel):
    """
    Canonical output unit of the gateway stream.

    A discriminated union expressed as optional fields: a chunk carries only the
    fields that apply to it. Unset fields are omitted on the wire, never sent as
    empty values.
    """

    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    web_search_queries: Optional[List[str]] = Field(default=None, alias="webSearchQueries")
    rendered_content: Optional[str] = Field(default=None, alias="renderedContent")
    source_citations: Optional[List[str]] = Field(default=None, alias="sourceCitations")
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")
    image_mime_type: Optional[str] = Field(default=None, alias="imageMimeType")
    youtube_videos: Optional[List[RelatedVideo]] = Field(default=None, alias="youtubeVideos")
    prediction: Optional[AsyncJob] = None

    @classmethod
    def text_delta(cls, text: str) -> "PayloadChunk":
        return cls(text=text)

    @classmethod
    def grounding(cls, web_search_queries: List[str], rendered_content: Optional[str]) -> "PayloadChunk":
        return cls(web_search_queries=web_search_queries, rendered_content=rendered_content)

    @classmethod
    def citations(cls, urls: List[str]) -> "PayloadChunk":
        return cls(source_citations=urls)

    @classmethod
    def image(cls, image_base64: str, mime_type: str, caption: Optional[str] = None) -> "PayloadChunk":
        return cls(image_base64=image_base64, image_mime_type=mime_type, text=caption)

    @classmethod
    def related_videos(cls, videos: List[RelatedVideo]) -> "PayloadChunk":
        return cls(youtube_videos=videos)

    @classmethod
    def job_handle(cls, job: AsyncJob, text: Optional[str] = None) -> "PayloadChunk":
        return cls(prediction=job, text=text)

    @classmethod
    def error(cls, message: str) -> "PayloadChunk":
        return cls(text=f"[Error: {message}]")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with wire field names, dropping fields that do not apply."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
