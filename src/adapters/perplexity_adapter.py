"""
Perplexity adapter: streamed answer followed by a citation lookup.

Following PROJECT_RULES.md:
- Async I/O for all operations
- Single responsibility: Perplexity research/citation API
- Structured logging with elapsed_ms
- Never log secrets or API keys
"""

import asyncio
import re
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from adapters.base import AdapterRequest, AdapterResponse, EventKind
from adapters.openai_compat_adapter import OpenAICompatAdapter
from common.config import PerplexityConfig
from common.errors import UpstreamError
from common.logging import TimedLogger, get_logger

logger = get_logger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s\])]+")


def extract_urls(text: str) -> List[str]:
    """Find URLs in free text, de-duplicated in order of first appearance."""
    return list(dict.fromkeys(URL_PATTERN.findall(text)))


class PerplexityAdapter(OpenAICompatAdapter):
    """
    Two-phase citation backend.

    Phase 1 streams the answer exactly like any OpenAI-compatible model.
    Phase 2 runs only when phase 1 finished and reported a completion id: the
    same messages are sent once more without streaming to obtain the structured
    `citations` list. When that request fails or carries no citations, URLs are
    pulled out of the streamed text instead.
    """

    provider_name = "perplexity"
    credential_env = "PERPLEXITY_API_KEY"
    accepts_attachments = False

    def __init__(self, config: PerplexityConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.models = config.models

    def build_payload(self, request: AdapterRequest) -> Dict[str, Any]:
        payload = super().build_payload(request)
        max_tokens = self.models.get(request.model_id)
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Stream the answer, then one CITATIONS event, then completion."""
        accumulated = ""
        completion: Optional[AdapterResponse] = None

        async for response in super().generate(request, cancel):
            if response.kind == EventKind.TEXT_DELTA:
                content = response.content or ""
                # Only the very first delta with visible text is trimmed
                if not accumulated and content.strip():
                    content = content.lstrip()
                accumulated += content
                yield AdapterResponse(kind=EventKind.TEXT_DELTA, content=content)
            elif response.kind == EventKind.COMPLETION:
                completion = response
            else:
                yield response

        # Cancelled or timed out: phase 1 never completed
        if completion is None:
            return
        if cancel is not None and cancel.is_set():
            return

        urls, origin = await self.fetch_citations(
            request, completion.metadata.get("completion_id"), accumulated
        )
        yield AdapterResponse(
            kind=EventKind.CITATIONS,
            metadata={"urls": urls, "origin": origin},
        )
        yield completion

    async def fetch_citations(
        self, request: AdapterRequest, completion_id: Optional[str], text: str
    ) -> Tuple[List[str], str]:
        """
        Return (urls, origin) where origin is "structured" or "regex".

        Re-sends the full prompt once; any failure falls back to the text.
        """
        if not completion_id:
            logger.info(
                event="perplexity_no_completion_id",
                request_id=request.request_id,
            )
            return extract_urls(text), "regex"

        payload = self.build_payload(request)
        payload.pop("stream", None)

        try:
            with TimedLogger(
                logger,
                "perplexity_citation_fetch",
                request_id=request.request_id,
                model=request.model_id,
            ):
                data = await self.request_json("POST", "chat/completions", payload)
        except UpstreamError as e:
            logger.warning(
                event="perplexity_citation_fetch_failed",
                request_id=request.request_id,
                error=e.message,
            )
            return extract_urls(text), "regex"

        citations = data.get("citations")
        if isinstance(citations, list):
            urls = [c for c in citations if isinstance(c, str)]
            if urls:
                return urls, "structured"

        return extract_urls(text), "regex"
