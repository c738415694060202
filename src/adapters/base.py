"""
Base adapter interface for AI backends.

Following PROJECT_RULES.md:
- Single responsibility: Define adapter interface
- Type safety with Pydantic models
- Async design for I/O operations
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from common.config import HTTPProviderConfig
from common.errors import ConfigurationMissing, UpstreamError
from common.logging import get_logger, preview
from common.models import Attachment, ChatMessage, ChatRole

logger = get_logger(__name__)


class AdapterRequest(BaseModel):
    """Normalized request handed to an adapter by the dispatcher."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(default="", description="Current user turn text")
    history: List[ChatMessage] = Field(default_factory=list, description="Prior turns, oldest first")
    attachment: Optional[Attachment] = Field(default=None, description="At most one file")
    model_id: str = Field(description="Backend-specific model identifier")
    selector: str = Field(description="Model selector as sent by the client")
    request_id: str = Field(default="", description="Gateway request id for log correlation")


class EventKind(str, Enum):
    """Raw provider event kinds consumed by the normalizer."""

    TEXT_DELTA = "text_delta"
    GROUNDING = "grounding"
    CITATIONS = "citations"
    IMAGE = "image"
    JOB = "job"
    PARTIAL_TIMEOUT = "partial_timeout"
    COMPLETION = "completion"


class AdapterResponse(BaseModel):
    """One raw event from an adapter, before normalization."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EventKind
    content: Optional[str] = Field(default=None, description="Text delta or caption")
    finish_reason: Optional[str] = Field(default=None, description="Completion reason")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific payload")


def openai_role(role: ChatRole) -> str:
    """Map history roles to the OpenAI-style vocabulary."""
    return "assistant" if role == ChatRole.MODEL else "user"


def gemini_role(role: ChatRole) -> str:
    """Map history roles to the Gemini SDK vocabulary."""
    return "model" if role == ChatRole.MODEL else "user"


class BaseAdapter(ABC):
    """
    Base class for backend adapters.

    Adapters are process-wide and hold only their credential and client; every
    call to `generate` opens exactly one upstream connection (or SDK call) and
    never retries.
    """

    provider_name: str = "unknown"
    credential_env: str = ""
    # False means attachments are dropped by the dispatcher with a warning
    accepts_attachments: bool = True

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else os.getenv(self.credential_env)
        if not self.api_key:
            raise ConfigurationMissing(self.credential_env, self.provider_name)

    def supports_attachment(self, mime_type: str) -> bool:
        """Whether this adapter can send an attachment of this type upstream."""
        return self.accepts_attachments

    def default_prompt(self, request: AdapterRequest) -> Optional[str]:
        """Text to send when the user supplied none (None = no default)."""
        return None

    @abstractmethod
    def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Stream raw provider events for one request."""

    async def aclose(self) -> None:
        """Release long-lived clients."""


def _error_detail(body: bytes) -> str:
    """Pull a readable message out of an upstream error body."""
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return "empty response body"
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return preview(text, 200)

    if isinstance(parsed, dict):
        error = parsed.get("error", parsed.get("detail"))
        if isinstance(error, dict):
            error = error.get("message") or error
        if error:
            return preview(str(error), 200)
    return preview(text, 200)


class HTTPAdapter(BaseAdapter):
    """
    Base for adapters that talk to a JSON-over-HTTPS backend with httpx.

    One AsyncClient per adapter instance, created on first use and reused for
    the life of the process. Tests inject a client built on httpx.MockTransport.
    """

    def __init__(
        self,
        config: HTTPProviderConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(api_key)
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._client_lock: Optional[asyncio.Lock] = None

    def auth_headers(self) -> Dict[str, str]:
        """Headers sent with every upstream request."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if self._client_lock is None:
            self._client_lock = asyncio.Lock()
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.request_timeout))
                logger.info(
                    event="http_client_created",
                    provider=self.provider_name,
                    base_url=self.config.base_url,
                )
        return self._client

    async def raise_for_upstream(self, response: httpx.Response) -> None:
        """Turn a non-2xx response into UpstreamError, reading the body for detail."""
        if response.is_success:
            return
        detail = _error_detail(await response.aread())
        logger.error(
            event="upstream_http_error",
            provider=self.provider_name,
            status=response.status_code,
            detail=detail,
        )
        raise UpstreamError(
            f"{self.provider_name} API error ({response.status_code}): {detail}",
            provider=self.provider_name,
            status=response.status_code,
        )

    @asynccontextmanager
    async def open_stream(
        self, path: str, payload: Dict[str, Any]
    ) -> AsyncIterator[httpx.Response]:
        """
        POST a streaming request and yield the response once its status is known good.

        Transport failures while connecting or reading the body surface as UpstreamError.
        """
        client = await self.get_client()
        try:
            async with client.stream(
                "POST", self.url(path), json=payload, headers=self.auth_headers()
            ) as response:
                await self.raise_for_upstream(response)
                yield response
        except httpx.HTTPError as e:
            logger.error(event="upstream_transport_error", provider=self.provider_name, error=str(e))
            raise UpstreamError(
                f"{self.provider_name} connection failed: {e}", provider=self.provider_name
            ) from e

    async def request_json(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send one non-streaming request and return its decoded JSON object."""
        client = await self.get_client()
        try:
            response = await client.request(
                method, self.url(path), json=payload, headers=self.auth_headers()
            )
        except httpx.HTTPError as e:
            logger.error(event="upstream_transport_error", provider=self.provider_name, error=str(e))
            raise UpstreamError(
                f"{self.provider_name} connection failed: {e}", provider=self.provider_name
            ) from e

        await self.raise_for_upstream(response)
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.provider_name} returned a non-JSON response",
                provider=self.provider_name,
                status=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise UpstreamError(
                f"{self.provider_name} returned an unexpected response shape",
                provider=self.provider_name,
                status=response.status_code,
            )
        return data

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
