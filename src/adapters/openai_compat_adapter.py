"""
OpenAI-compatible SSE adapters (Together, OpenRouter, OpenAI, Llama-Vision).

Following PROJECT_RULES.md:
- Async I/O for all operations
- Single responsibility: OpenAI-style chat completions over SSE
- Structured logging with elapsed_ms
- Never log secrets or API keys
- Idle-stream timeout ends the read loop instead of hanging
"""

import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from adapters.base import AdapterRequest, AdapterResponse, EventKind, HTTPAdapter, openai_role
from common.config import HTTPProviderConfig, OpenAIConfig, OpenRouterConfig, TogetherConfig
from common.errors import UpstreamError
from common.logging import TimedLogger, get_logger
from common.models import InlineFile, is_image
from common.stream_utils import FrameDecoder, iter_sse_events

logger = get_logger(__name__)


def non_image_note(file_name: Optional[str], mime_type: str) -> str:
    """Explanatory text sent in place of an attachment a vision model cannot read."""
    return (
        f"\n\n(Note: A file named '{file_name or 'file'}' of type '{mime_type}' was uploaded, "
        "but this model primarily processes images and text.)"
    )


class OpenAICompatAdapter(HTTPAdapter):
    """
    Chat completions over an OpenAI-compatible `/chat/completions` SSE endpoint.

    The plain variant sends text only. The vision variant embeds an image
    attachment as an `image_url` part and degrades any other attachment to a
    text note.
    """

    vision: bool = False
    accepts_attachments = False
    # Sent when an image arrives without text (None means send the text as-is)
    image_only_prompt: Optional[str] = None
    image_detail: Optional[str] = None

    def __init__(
        self,
        config: HTTPProviderConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, api_key=api_key, client=client)
        logger.info(
            event="adapter_initialized",
            provider=self.provider_name,
            vision=self.vision,
        )

    def default_prompt(self, request: AdapterRequest) -> Optional[str]:
        if self.vision and is_image(request.attachment):
            return self.image_only_prompt
        return None

    def build_messages(self, request: AdapterRequest) -> List[Dict[str, Any]]:
        """Flatten history plus the current turn into OpenAI-style messages."""
        messages: List[Dict[str, Any]] = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})

        for turn in request.history:
            if not turn.content.strip():
                continue
            messages.append({"role": openai_role(turn.role), "content": turn.content})

        messages.append({"role": "user", "content": self.build_user_content(request)})
        return messages

    def build_user_content(self, request: AdapterRequest) -> Any:
        attachment = request.attachment
        text = request.message.strip() or (self.default_prompt(request) or "")
        if not self.vision or attachment is None:
            return text

        if not is_image(attachment):
            return [{"type": "text", "text": text + non_image_note(attachment.name, attachment.mime_type)}]

        url = attachment.data_url if isinstance(attachment, InlineFile) else attachment.uri
        image_url: Dict[str, Any] = {"url": url}
        if self.image_detail:
            image_url["detail"] = self.image_detail
        return [{"type": "text", "text": text}, {"type": "image_url", "image_url": image_url}]

    def build_payload(self, request: AdapterRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model_id,
            "messages": self.build_messages(request),
            "stream": True,
        }
        if self.config.max_tokens:
            payload["max_tokens"] = self.config.max_tokens
        return payload

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Stream text deltas, then a partial-timeout or completion event."""
        payload = self.build_payload(request)
        decoder = FrameDecoder(self.provider_name)
        finish_reason: Optional[str] = None
        completion_id: Optional[str] = None

        with TimedLogger(
            logger,
            f"{self.provider_name}_chat_completion",
            request_id=request.request_id,
            model=request.model_id,
            message_count=len(payload["messages"]),
        ):
            async with self.open_stream("chat/completions", payload) as response:
                async for event in iter_sse_events(
                    response.aiter_bytes(),
                    decoder=decoder,
                    idle_timeout=self.config.idle_timeout,
                    cancel=cancel,
                ):
                    if "error" in event:
                        raise UpstreamError(
                            f"{self.provider_name} stream error: {event['error']}",
                            provider=self.provider_name,
                        )
                    if completion_id is None and event.get("id"):
                        completion_id = event["id"]
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield AdapterResponse(kind=EventKind.TEXT_DELTA, content=content)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

        if decoder.cancelled:
            return
        if decoder.timed_out:
            yield AdapterResponse(
                kind=EventKind.PARTIAL_TIMEOUT,
                metadata={"idle_timeout": self.config.idle_timeout},
            )
            return
        yield AdapterResponse(
            kind=EventKind.COMPLETION,
            finish_reason=finish_reason or "stop",
            metadata={
                "completion_id": completion_id,
                "events_decoded": decoder.events_decoded,
                "lines_skipped": decoder.lines_skipped,
            },
        )


class TogetherAdapter(OpenAICompatAdapter):
    """Together AI text models (Llama 3.3, DeepSeek R1 distill)."""

    provider_name = "together"
    credential_env = "TOGETHER_API_KEY"


class TogetherVisionAdapter(OpenAICompatAdapter):
    """Together AI Llama-Vision."""

    provider_name = "together"
    credential_env = "TOGETHER_API_KEY"
    vision = True
    accepts_attachments = True

    def __init__(self, config: TogetherConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.vision_max_tokens = config.vision_max_tokens

    def build_payload(self, request: AdapterRequest) -> Dict[str, Any]:
        payload = super().build_payload(request)
        payload["max_tokens"] = self.vision_max_tokens
        return payload


class OpenRouterAdapter(OpenAICompatAdapter):
    """OpenRouter vision models (Qwen 2.5 VL)."""

    provider_name = "openrouter"
    credential_env = "OPENROUTER_API_KEY"
    vision = True
    accepts_attachments = True

    def __init__(self, config: OpenRouterConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.site_url = config.site_url
        self.site_name = config.site_name

    def auth_headers(self) -> Dict[str, str]:
        headers = super().auth_headers()
        headers["HTTP-Referer"] = self.site_url
        headers["X-Title"] = self.site_name
        return headers


class OpenAIAdapter(OpenAICompatAdapter):
    """OpenAI GPT-4o mini."""

    provider_name = "openai"
    credential_env = "OPENAI_API_KEY"
    vision = True
    accepts_attachments = True
    image_only_prompt = "What is in this image?"

    def __init__(self, config: OpenAIConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.image_detail = config.image_detail
