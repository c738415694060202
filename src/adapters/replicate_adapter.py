"""
Replicate adapter for async image generation jobs.

Following PROJECT_RULES.md:
- Async I/O for all operations
- Single responsibility: Replicate prediction API
- Structured logging with elapsed_ms
- Never log secrets or API keys
"""

import asyncio
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from pydantic import ValidationError

from adapters.base import AdapterRequest, AdapterResponse, EventKind, HTTPAdapter
from common.config import ReplicateConfig
from common.errors import InvalidInput, UpstreamError
from common.logging import TimedLogger, get_logger
from common.models import AsyncJob, Attachment, ChatMessage, ChatRole, InlineFile

logger = get_logger(__name__)

BAGEL_MODEL = "bytedance/bagel"
FLUX_KONTEXT_MODEL = "black-forest-labs/flux-kontext-pro"

JOB_STARTED_TEXT = "Your image is being generated..."

EDITING_KEYWORDS = ("edit", "change", "modify", "add", "remove", "replace", "make it", "turn it into")
UNDERSTANDING_KEYWORDS = ("what is", "describe", "explain", "tell me about", "can you see")

# Images returned by earlier turns are stored without their type
HISTORY_IMAGE_MIME = "image/webp"


class ImageTask(str, Enum):
    """Task sent to the Bagel model."""

    TEXT_TO_IMAGE = "text-to-image"
    IMAGE_EDITING = "image-editing"
    IMAGE_UNDERSTANDING = "image-understanding"


def _is_question(message: str) -> bool:
    lowered = message.lower()
    return any(k in lowered for k in UNDERSTANDING_KEYWORDS) or lowered.endswith("?")


def _is_edit(message: str) -> bool:
    lowered = message.lower()
    return any(k in lowered for k in EDITING_KEYWORDS)


def _last_model_image(history: List[ChatMessage]) -> Optional[str]:
    for turn in reversed(history):
        if turn.role == ChatRole.MODEL:
            return turn.image_base64
    return None


def classify_image_task(
    message: str, attachment: Optional[Attachment], history: List[ChatMessage]
) -> Tuple[ImageTask, Optional[Attachment]]:
    """
    Keyword heuristic choosing the image task and its input image.

    Best effort: ambiguous prompts can be misclassified. The input image is the
    upload, else the last image the model produced. When both keyword sets
    match, editing wins.
    """
    image = attachment
    if image is None:
        previous = _last_model_image(history)
        if not previous:
            return ImageTask.TEXT_TO_IMAGE, None
        try:
            image = InlineFile(mime_type=HISTORY_IMAGE_MIME, base64_data=previous)
        except ValidationError as e:
            raise InvalidInput("Previous image in history is not valid base64") from e

    if _is_edit(message):
        return ImageTask.IMAGE_EDITING, image
    if _is_question(message):
        return ImageTask.IMAGE_UNDERSTANDING, image
    return ImageTask.IMAGE_EDITING, image


def image_reference(attachment: Attachment) -> str:
    """URI for remote files, data URL for inline bytes."""
    if isinstance(attachment, InlineFile):
        return attachment.data_url
    return attachment.uri


class ReplicateAdapter(HTTPAdapter):
    """
    Starts a Replicate prediction and hands back its handle without waiting.

    The caller polls the job status endpoint for the result.
    """

    provider_name = "replicate"
    credential_env = "REPLICATE_API_TOKEN"

    def __init__(self, config: ReplicateConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.replicate_config = config
        logger.info(event="adapter_initialized", provider=self.provider_name)

    def supports_attachment(self, mime_type: str) -> bool:
        """Only images can be edited or described."""
        return mime_type.startswith("image/")

    def build_prediction(self, request: AdapterRequest) -> Tuple[str, Dict[str, Any]]:
        """Return (endpoint path, create payload) for the requested model."""
        cfg = self.replicate_config
        model = request.model_id
        job_input: Dict[str, Any] = {"prompt": request.message}

        if model == BAGEL_MODEL:
            job_input.update(cfg.bagel_input)
            task, image = classify_image_task(request.message, request.attachment, request.history)
            job_input["task"] = task.value
            if image is not None:
                job_input["image"] = image_reference(image)
            logger.info(
                event="replicate_task_classified",
                request_id=request.request_id,
                task=task.value,
                has_image=image is not None,
            )
            # Bagel predictions are created by pinned version, not by model name
            return "predictions", {"version": cfg.bagel_version, "input": job_input}

        if model == FLUX_KONTEXT_MODEL:
            if request.attachment is not None:
                job_input["input_image"] = image_reference(request.attachment)
                job_input["prompt_strength"] = cfg.flux_prompt_strength
            job_input.update(cfg.flux_input)
            return f"models/{model}/predictions", {"input": job_input}

        raise InvalidInput(f"Model {model} is not supported by the Replicate adapter.")

    def parse_job(self, data: Dict[str, Any]) -> AsyncJob:
        try:
            return AsyncJob.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(
                f"replicate returned an unreadable prediction: {e.error_count()} invalid fields",
                provider=self.provider_name,
            ) from e

    async def create_job(self, request: AdapterRequest) -> AsyncJob:
        path, payload = self.build_prediction(request)
        with TimedLogger(
            logger,
            "replicate_create_prediction",
            request_id=request.request_id,
            model=request.model_id,
            input_keys=sorted(payload["input"]),
        ):
            data = await self.request_json("POST", path, payload)
        job = self.parse_job(data)
        logger.info(
            event="replicate_job_created",
            request_id=request.request_id,
            job_id=job.id,
            status=job.status.value,
        )
        return job

    async def get_job(self, job_id: str) -> AsyncJob:
        """Fetch the current state of a prediction."""
        with TimedLogger(logger, "replicate_get_prediction", job_id=job_id):
            data = await self.request_json("GET", f"predictions/{job_id}")
        return self.parse_job(data)

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        """Create one job and yield its handle. The job keeps running after the request ends."""
        if cancel is not None and cancel.is_set():
            return
        job = await self.create_job(request)
        yield AdapterResponse(
            kind=EventKind.JOB,
            content=JOB_STARTED_TEXT,
            metadata={"job": job},
        )
