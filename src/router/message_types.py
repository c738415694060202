"""
Internal message types for router communication.

Following PROJECT_RULES.md: Single responsibility, type-safe models.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from adapters.base import AdapterRequest, BaseAdapter
from common.models import Attachment, ChatMessage


class AdapterFamily(str, Enum):
    """Closed set of backend adapters the dispatcher can select."""

    GEMINI = "gemini"
    PERPLEXITY = "perplexity"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    TOGETHER_VISION = "together_vision"
    TOGETHER_IMAGE = "together_image"
    REPLICATE = "replicate"


class RouteEntry(BaseModel):
    """Where one model selector goes."""

    model_config = ConfigDict(frozen=True)

    family: AdapterFamily
    model_id: str = Field(description="Model identifier sent to the backend")


class ChatRequest(BaseModel):
    """Inbound request as parsed from the HTTP form."""

    request_id: str
    message: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    attachment: Optional[Attachment] = None
    model_selector: str = ""


class DispatchResult(BaseModel):
    """Adapter chosen for a request plus the request built for it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    route: RouteEntry
    adapter: BaseAdapter
    request: AdapterRequest
    warnings: List[str] = Field(default_factory=list)
