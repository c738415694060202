"""
Together AI FLUX.1-schnell image generation.

Following PROJECT_RULES.md:
- Async I/O for all operations
- Single responsibility: synchronous text-to-image call
- Never log secrets or API keys
"""

import asyncio
from typing import Any, AsyncGenerator, Dict, Optional

from adapters.base import AdapterRequest, AdapterResponse, EventKind, HTTPAdapter
from common.config import TogetherConfig
from common.errors import InvalidInput, UpstreamError
from common.logging import TimedLogger, get_logger, preview

logger = get_logger(__name__)


class TogetherImageAdapter(HTTPAdapter):
    """One prompt in, one base64 image out. Attachments are not used."""

    provider_name = "together"
    credential_env = "TOGETHER_API_KEY"
    accepts_attachments = False

    def __init__(self, config: TogetherConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.together_config = config
        logger.info(event="adapter_initialized", provider=self.provider_name, image=True)

    def build_payload(self, request: AdapterRequest) -> Dict[str, Any]:
        cfg = self.together_config
        return {
            "model": request.model_id,
            "prompt": request.message,
            "width": cfg.image_width,
            "height": cfg.image_height,
            "steps": cfg.image_steps,
            "n": 1,
            "output_format": cfg.image_format,
            "response_format": "base64",
        }

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Yield a single IMAGE event captioned with the prompt."""
        prompt = request.message.strip()
        if not prompt:
            raise InvalidInput("Prompt is required for image generation.")
        if cancel is not None and cancel.is_set():
            return

        with TimedLogger(
            logger,
            "together_image_generation",
            request_id=request.request_id,
            model=request.model_id,
            prompt_preview=preview(prompt),
        ):
            data = await self.request_json("POST", "images/generations", self.build_payload(request))

        images = data.get("data") or []
        image_base64 = images[0].get("b64_json") if images and isinstance(images[0], dict) else None
        if not image_base64:
            logger.error(
                event="together_image_missing",
                request_id=request.request_id,
                response_keys=sorted(data),
            )
            raise UpstreamError(
                "Image generation failed: No image data returned by the API.",
                provider=self.provider_name,
            )

        yield AdapterResponse(
            kind=EventKind.IMAGE,
            content=f'Image generated for: "{prompt}"',
            metadata={
                "image_base64": image_base64,
                "mime_type": f"image/{self.together_config.image_format}",
            },
        )
