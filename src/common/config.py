"""
Configuration loader for the streaming gateway.

Loads settings from config.yaml. Environment variables are used ONLY for secrets.
Following PROJECT_RULES.md security rules - never log secrets.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_SYSTEM_PROMPT = (
    "You are SageMind, a knowledgeable and helpful AI assistant that provides accurate "
    "and thoughtful responses to user queries."
)

RESEARCH_SYSTEM_PROMPT = (
    "You are SageMind, a knowledgeable and helpful AI assistant that provides accurate, "
    "well-structured and thoughtful responses to user queries.\n\n"
    "When answering research questions:\n"
    "1. Provide well-organized, factual information\n"
    "2. Use markdown formatting for better readability (headings, lists, etc.)\n"
    "3. Include relevant citations to support your answers"
)


class GatewayConfig(BaseModel):
    """Configuration for the HTTP gateway."""

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8000, description="Port to bind to")
    max_upload_size: int = Field(
        default=20 * 1024 * 1024, description="Maximum decoded inline attachment size in bytes"
    )
    disconnect_poll_interval: float = Field(
        default=0.5, description="Seconds between client disconnect checks"
    )


class RouterConfig(BaseModel):
    """Configuration for the request dispatcher."""

    default_model: str = Field(
        default="gemini-1.5-flash", description="Gemini model for unrecognized selectors"
    )
    citation_prefix: str = Field(
        default="sonar", description="Selectors with this prefix route to the citation backend"
    )


class HTTPProviderConfig(BaseModel):
    """Settings shared by HTTP-based backends."""

    base_url: str
    request_timeout: float = Field(default=60.0, description="Connect/write timeout in seconds")
    idle_timeout: float = Field(
        default=30.0, description="Seconds without a streamed byte before the read loop ends"
    )
    system_prompt: Optional[str] = Field(default=None, description="Prepended system message")
    max_tokens: Optional[int] = Field(default=None, description="Max output tokens")


class GeminiConfig(BaseModel):
    """Gemini SDK settings."""

    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    enable_search_grounding: bool = Field(
        default=False, description="Attach the Google Search retrieval tool"
    )
    safety_threshold: str = Field(default="BLOCK_MEDIUM_AND_ABOVE")


class PerplexityConfig(HTTPProviderConfig):
    """Perplexity (citation backend) settings."""

    base_url: str = "https://api.perplexity.ai"
    system_prompt: Optional[str] = RESEARCH_SYSTEM_PROMPT
    default_model: str = "sonar"
    models: Dict[str, int] = Field(
        default_factory=lambda: {"sonar": 4096, "sonar-pro": 8192},
        description="Model name -> max output tokens",
    )


class OpenRouterConfig(HTTPProviderConfig):
    """OpenRouter settings."""

    base_url: str = "https://openrouter.ai/api/v1"
    site_url: str = Field(default="https://sagemind-chat.vercel.app")
    site_name: str = Field(default="SageMind")


class TogetherConfig(HTTPProviderConfig):
    """Together AI settings (chat and FLUX image generation)."""

    base_url: str = "https://api.together.xyz/v1"
    vision_max_tokens: int = Field(default=2048)
    image_width: int = Field(default=1024)
    image_height: int = Field(default=1024)
    image_steps: int = Field(default=4, description="FLUX.1-schnell accepts 1-4 steps")
    image_format: str = Field(default="jpeg", description="jpeg or png")


class OpenAIConfig(HTTPProviderConfig):
    """OpenAI settings."""

    base_url: str = "https://api.openai.com/v1"
    image_detail: str = Field(default="high")


class ReplicateConfig(HTTPProviderConfig):
    """Replicate async job settings."""

    base_url: str = "https://api.replicate.com/v1"
    bagel_version: str = Field(
        default="7dd8def79e503990740db4704fa81af995d440fefe714958531d7044d2757c9c"
    )
    bagel_input: Dict[str, Any] = Field(
        default_factory=lambda: {
            "cfg_img_scale": 1,
            "cfg_text_scale": 4,
            "output_format": "webp",
            "output_quality": 90,
            "enable_thinking": True,
            "cfg_renorm_min": 1,
            "timestep_shift": 3,
            "cfg_renorm_type": "global",
            "num_inference_steps": 50,
        }
    )
    flux_input: Dict[str, Any] = Field(
        default_factory=lambda: {"output_format": "jpg", "output_quality": 90}
    )
    flux_prompt_strength: float = Field(default=5)


class ProvidersConfig(BaseModel):
    """Per-backend configuration."""

    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    perplexity: PerplexityConfig = Field(default_factory=PerplexityConfig)
    openrouter: OpenRouterConfig = Field(default_factory=OpenRouterConfig)
    together: TogetherConfig = Field(default_factory=TogetherConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    replicate: ReplicateConfig = Field(default_factory=ReplicateConfig)


class Config(BaseModel):
    """Main configuration object."""

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    log_level: str = Field(default="INFO", description="Logging level")
    enable_pretty_print: bool = Field(
        default=False, description="Enable custom pretty print for debugging"
    )
    save_to_file: bool = Field(default=False, description="Save logs to file")
    log_file_path: str = Field(default="server.log", description="Log file path (relative to root)")
    max_log_file_size: int = Field(
        default=10485760, description="Max log file size in bytes (10MB)"
    )
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


_LOGGING_KEYS = {
    "level": "log_level",
    "enable_pretty_print": "enable_pretty_print",
    "save_to_file": "save_to_file",
    "log_file_path": "log_file_path",
    "max_log_file_size": "max_log_file_size",
    "backup_count": "backup_count",
}


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Environment variables are used ONLY for secrets (API keys), not configuration.

    Args:
        config_path: Path to config.yaml file. Defaults to ./config.yaml

    Returns:
        Loaded configuration object
    """
    if config_path is None:
        config_path = Path("config.yaml")

    config_data: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Flatten the nested logging block into top-level fields
    logging_config = config_data.pop("logging", None) or {}
    for yaml_key, field_name in _LOGGING_KEYS.items():
        if yaml_key in logging_config:
            config_data[field_name] = logging_config[yaml_key]

    return Config(**config_data)
