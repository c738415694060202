"""
Google Gemini adapter for streamed chat with optional search grounding.

Following PROJECT_RULES.md:
- Async I/O for all operations
- Single responsibility: Google Gemini API integration
- Structured logging with elapsed_ms
- Never log secrets or API keys
"""

import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import (
    BlockedPromptException,
    HarmBlockThreshold,
    HarmCategory,
    StopCandidateException,
)

from adapters.base import AdapterRequest, AdapterResponse, BaseAdapter, EventKind, gemini_role
from common.config import GeminiConfig
from common.errors import InvalidInput, UpstreamError
from common.logging import TimedLogger, get_logger, preview
from common.models import InlineFile

logger = get_logger(__name__)

SAFETY_CATEGORIES = (
    HarmCategory.HARM_CATEGORY_HARASSMENT,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)

_SDK_ERRORS = (google_exceptions.GoogleAPIError, BlockedPromptException, StopCandidateException)


class GeminiAdapter(BaseAdapter):
    """
    Gemini adapter built on the google-generativeai SDK.

    History is replayed into a chat session and the current turn is sent as at
    most one text part plus at most one file part. Once the token stream ends
    the finalized response is read once more for grounding metadata.
    """

    provider_name = "gemini"
    credential_env = "GEMINI_API_KEY"

    def __init__(self, config: GeminiConfig, api_key: Optional[str] = None):
        super().__init__(api_key)
        self.config = config
        self._models: Dict[str, Any] = {}

        genai.configure(api_key=self.api_key)

        threshold = HarmBlockThreshold[config.safety_threshold]
        self.safety_settings = {category: threshold for category in SAFETY_CATEGORIES}

        logger.info(
            event="adapter_initialized",
            provider=self.provider_name,
            search_grounding=config.enable_search_grounding,
        )

    def get_model(self, model_name: str) -> Any:
        """GenerativeModel per model name, created once."""
        if model_name not in self._models:
            kwargs: Dict[str, Any] = {
                "system_instruction": self.config.system_prompt,
                "safety_settings": self.safety_settings,
            }
            if self.config.enable_search_grounding:
                kwargs["tools"] = "google_search_retrieval"
            self._models[model_name] = genai.GenerativeModel(model_name, **kwargs)
        return self._models[model_name]

    def build_history(self, request: AdapterRequest) -> List[Dict[str, Any]]:
        return [
            {"role": gemini_role(turn.role), "parts": [turn.content]}
            for turn in request.history
            if turn.content.strip()
        ]

    def build_parts(self, request: AdapterRequest) -> List[Any]:
        """Current turn: text part first, then the attachment part."""
        parts: List[Any] = []
        if request.message.strip():
            parts.append(request.message)

        attachment = request.attachment
        if isinstance(attachment, InlineFile):
            parts.append({"mime_type": attachment.mime_type, "data": attachment.decoded()})
        elif attachment is not None:
            parts.append(
                genai.protos.Part(
                    file_data=genai.protos.FileData(
                        mime_type=attachment.mime_type, file_uri=attachment.uri
                    )
                )
            )

        if not parts:
            raise InvalidInput("Cannot send an empty message")
        return parts

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Stream text deltas, then grounding metadata, then completion."""
        parts = self.build_parts(request)
        history = self.build_history(request)
        chunk_count = 0

        with TimedLogger(
            logger,
            "gemini_chat_completion",
            request_id=request.request_id,
            model=request.model_id,
            history_length=len(history),
            part_count=len(parts),
        ):
            try:
                chat = self.get_model(request.model_id).start_chat(history=history)
                response = await chat.send_message_async(parts, stream=True)

                async for chunk in response:
                    if cancel is not None and cancel.is_set():
                        logger.info(event="gemini_stream_cancelled", request_id=request.request_id)
                        return

                    text = self._chunk_text(chunk)
                    if text:
                        chunk_count += 1
                        yield AdapterResponse(kind=EventKind.TEXT_DELTA, content=text)
            except _SDK_ERRORS as e:
                logger.error(
                    event="gemini_api_error",
                    request_id=request.request_id,
                    error=preview(str(e), 200),
                )
                raise UpstreamError(f"Gemini API error: {e}", provider=self.provider_name) from e

        if cancel is not None and cancel.is_set():
            return

        grounding = self._grounding_metadata(response)
        if grounding is not None:
            yield AdapterResponse(
                kind=EventKind.GROUNDING,
                metadata={"grounding_metadata": grounding},
            )

        yield AdapterResponse(
            kind=EventKind.COMPLETION,
            finish_reason="stop",
            metadata={"chunks": chunk_count},
        )

    @staticmethod
    def _chunk_text(chunk: Any) -> Optional[str]:
        """Text of one stream chunk, or None for blocked/empty chunks."""
        candidates = getattr(chunk, "candidates", None)
        if candidates and getattr(candidates[0], "content", None) and candidates[0].content.parts:
            return chunk.text

        feedback = getattr(chunk, "prompt_feedback", None)
        logger.warning(
            event="gemini_chunk_blocked_or_empty",
            block_reason=str(getattr(feedback, "block_reason", None) or "unknown"),
        )
        return None

    @staticmethod
    def _grounding_metadata(response: Any) -> Optional[Any]:
        candidates = getattr(response, "candidates", None)
        if not candidates:
            return None
        return getattr(candidates[0], "grounding_metadata", None)
