"""
Request router: selects a backend adapter and drives its stream.

Following PROJECT_RULES.md:
- Async I/O for all operations
- Fail fast with explicit errors before any network call
- Structured logging with elapsed_ms
- Single responsibility per class
"""

import asyncio
import os
from typing import AsyncGenerator, Dict, Optional

import httpx

from adapters.base import AdapterRequest, BaseAdapter
from adapters.gemini_adapter import GeminiAdapter
from adapters.openai_compat_adapter import (
    OpenAIAdapter,
    OpenRouterAdapter,
    TogetherAdapter,
    TogetherVisionAdapter,
)
from adapters.perplexity_adapter import PerplexityAdapter
from adapters.replicate_adapter import ReplicateAdapter
from adapters.together_image_adapter import TogetherImageAdapter
from common.config import Config
from common.errors import InvalidInput
from common.logging import TimedLogger, get_logger, preview
from common.models import AsyncJob, PayloadChunk, is_audio
from router.message_types import AdapterFamily, ChatRequest, DispatchResult, RouteEntry
from router.normalizer import ResponseNormalizer

logger = get_logger(__name__)

AUDIO_DEFAULT_PROMPT = "Process this audio."

# Exact selector -> backend. Anything not listed (and not a citation-prefix
# selector) goes to the default Gemini model.
ROUTING_TABLE: Dict[str, RouteEntry] = {
    "gpt-4o-mini": RouteEntry(family=AdapterFamily.OPENAI, model_id="gpt-4o-mini"),
    "qwen/qwen2.5-vl-72b-instruct:free": RouteEntry(
        family=AdapterFamily.OPENROUTER, model_id="qwen/qwen2.5-vl-72b-instruct:free"
    ),
    "meta-llama/Llama-Vision-Free": RouteEntry(
        family=AdapterFamily.TOGETHER_VISION, model_id="meta-llama/Llama-Vision-Free"
    ),
    "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free": RouteEntry(
        family=AdapterFamily.TOGETHER, model_id="meta-llama/Llama-3.3-70B-Instruct-Turbo-Free"
    ),
    "deepseek-ai/DeepSeek-R1-Distill-Llama-70B-free": RouteEntry(
        family=AdapterFamily.TOGETHER, model_id="deepseek-ai/DeepSeek-R1-Distill-Llama-70B-free"
    ),
    "black-forest-labs/FLUX.1-schnell-Free": RouteEntry(
        family=AdapterFamily.TOGETHER_IMAGE, model_id="black-forest-labs/FLUX.1-schnell-Free"
    ),
    "bytedance/bagel": RouteEntry(family=AdapterFamily.REPLICATE, model_id="bytedance/bagel"),
    "black-forest-labs/flux-kontext-pro": RouteEntry(
        family=AdapterFamily.REPLICATE, model_id="black-forest-labs/flux-kontext-pro"
    ),
}

CREDENTIALS: Dict[AdapterFamily, str] = {
    AdapterFamily.GEMINI: GeminiAdapter.credential_env,
    AdapterFamily.PERPLEXITY: PerplexityAdapter.credential_env,
    AdapterFamily.OPENAI: OpenAIAdapter.credential_env,
    AdapterFamily.OPENROUTER: OpenRouterAdapter.credential_env,
    AdapterFamily.TOGETHER: TogetherAdapter.credential_env,
    AdapterFamily.TOGETHER_VISION: TogetherVisionAdapter.credential_env,
    AdapterFamily.TOGETHER_IMAGE: TogetherImageAdapter.credential_env,
    AdapterFamily.REPLICATE: ReplicateAdapter.credential_env,
}


class RequestRouter:
    """
    Request dispatcher and adapter registry.

    Responsibilities:
    - Resolve a model selector through the routing table
    - Create each adapter once, on first use, after its credential check
    - Validate the request against the chosen adapter
    - Stream normalized chunks back to the gateway
    """

    def __init__(self, config: Config, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.http_client = http_client
        self.adapters: Dict[AdapterFamily, BaseAdapter] = {}

        logger.info(
            event="router_initialized",
            default_model=config.router.default_model,
            citation_prefix=config.router.citation_prefix,
            routes=len(ROUTING_TABLE),
        )

    def resolve(self, selector: str) -> RouteEntry:
        """Map a model selector to its backend. Pure lookup, no I/O."""
        selector = (selector or "").strip()
        if selector.startswith(self.config.router.citation_prefix):
            perplexity = self.config.providers.perplexity
            model_id = selector if selector in perplexity.models else perplexity.default_model
            return RouteEntry(family=AdapterFamily.PERPLEXITY, model_id=model_id)

        entry = ROUTING_TABLE.get(selector)
        if entry is not None:
            return entry
        return RouteEntry(family=AdapterFamily.GEMINI, model_id=self.config.router.default_model)

    def register_adapter(self, family: AdapterFamily, adapter: BaseAdapter) -> None:
        """Install a pre-built adapter (used by tests and embedding code)."""
        self.adapters[family] = adapter

    def get_adapter(self, family: AdapterFamily) -> BaseAdapter:
        """
        Return the process-wide adapter for a family, creating it on first use.

        Raises:
            ConfigurationMissing: the family's credential env var is not set
        """
        adapter = self.adapters.get(family)
        if adapter is None:
            adapter = self._create_adapter(family)
            self.adapters[family] = adapter
            logger.info(event="adapter_loaded", family=family.value)
        return adapter

    def _create_adapter(self, family: AdapterFamily) -> BaseAdapter:
        providers = self.config.providers
        http = {"client": self.http_client}

        if family == AdapterFamily.GEMINI:
            return GeminiAdapter(providers.gemini)
        if family == AdapterFamily.PERPLEXITY:
            return PerplexityAdapter(providers.perplexity, **http)
        if family == AdapterFamily.OPENAI:
            return OpenAIAdapter(providers.openai, **http)
        if family == AdapterFamily.OPENROUTER:
            return OpenRouterAdapter(providers.openrouter, **http)
        if family == AdapterFamily.TOGETHER:
            return TogetherAdapter(providers.together, **http)
        if family == AdapterFamily.TOGETHER_VISION:
            return TogetherVisionAdapter(providers.together, **http)
        if family == AdapterFamily.TOGETHER_IMAGE:
            return TogetherImageAdapter(providers.together, **http)
        return ReplicateAdapter(providers.replicate, **http)

    def dispatch(self, request: ChatRequest) -> DispatchResult:
        """
        Choose the adapter and build its request.

        Raises:
            ConfigurationMissing: credential for the chosen backend is absent
            InvalidInput: nothing to send, or an attachment the backend cannot take
        """
        route = self.resolve(request.model_selector)
        adapter = self.get_adapter(route.family)
        warnings = []

        attachment = request.attachment
        if attachment is not None:
            if not adapter.accepts_attachments:
                warning = (
                    f"Attachment of type '{attachment.mime_type}' was ignored: "
                    f"{request.model_selector or route.model_id} does not accept files."
                )
                logger.warning(
                    event="attachment_dropped",
                    request_id=request.request_id,
                    family=route.family.value,
                    mime_type=attachment.mime_type,
                )
                warnings.append(warning)
                attachment = None
            elif not adapter.supports_attachment(attachment.mime_type):
                raise InvalidInput(
                    f"Attachments of type '{attachment.mime_type}' are not supported by "
                    f"{request.model_selector or route.model_id}."
                )

        adapter_request = AdapterRequest(
            message=request.message,
            history=request.history,
            attachment=attachment,
            model_id=route.model_id,
            selector=request.model_selector,
            request_id=request.request_id,
        )

        if not request.message.strip():
            default = AUDIO_DEFAULT_PROMPT if is_audio(attachment) else adapter.default_prompt(adapter_request)
            if default:
                adapter_request = adapter_request.model_copy(update={"message": default})
            elif attachment is None:
                raise InvalidInput("Message, file, or file URI is required")

        logger.info(
            event="request_dispatched",
            request_id=request.request_id,
            family=route.family.value,
            model=route.model_id,
            history_length=len(request.history),
            has_attachment=attachment is not None,
            message_preview=preview(adapter_request.message),
        )
        return DispatchResult(
            route=route, adapter=adapter, request=adapter_request, warnings=warnings
        )

    async def stream(
        self, dispatch: DispatchResult, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[PayloadChunk, None]:
        """Run the chosen adapter and yield normalized chunks in order."""
        request = dispatch.request
        normalizer = ResponseNormalizer(dispatch.route.family.value, request.request_id)

        with TimedLogger(
            logger,
            "request_processed",
            request_id=request.request_id,
            family=dispatch.route.family.value,
            model=request.model_id,
        ):
            events = dispatch.adapter.generate(request, cancel)
            try:
                async for event in events:
                    for chunk in normalizer.process(event):
                        yield chunk
            finally:
                await events.aclose()
                logger.info(
                    event="stream_summary",
                    request_id=request.request_id,
                    chunks_emitted=normalizer.chunks_emitted,
                    text_length=len(normalizer.text),
                    finish_reason=normalizer.finish_reason,
                )

    async def process_request(
        self, request: ChatRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[PayloadChunk, None]:
        """Dispatch and stream in one step."""
        dispatch = self.dispatch(request)
        async for chunk in self.stream(dispatch, cancel):
            yield chunk

    async def get_job(self, job_id: str) -> AsyncJob:
        """Current state of an async image job."""
        adapter = self.get_adapter(AdapterFamily.REPLICATE)
        return await adapter.get_job(job_id)  # type: ignore[attr-defined]

    def health(self) -> Dict[str, bool]:
        """Credential availability per adapter family."""
        return {
            family.value: family in self.adapters or bool(os.getenv(env_var))
            for family, env_var in CREDENTIALS.items()
        }

    async def aclose(self) -> None:
        for family, adapter in self.adapters.items():
            await adapter.aclose()
            logger.info(event="adapter_closed", family=family.value)
        self.adapters.clear()
