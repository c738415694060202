"""
Structured logging for the gateway using structlog.

Following PROJECT_RULES.md:
- Use structlog for structured JSON logging
- Include event, module, and elapsed_ms fields
- Never log tokens, secrets, or PII
"""

import logging
import logging.handlers
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import structlog

from common.config import Config

# Set by setup_logging; read by the renderer on every log line
_pretty: bool = False

# Keys whose values are never written out
SECRET_KEYS = frozenset({"api_key", "apikey", "authorization", "token", "access_token", "secret", "password"})
# Keys holding inline file payloads; logged as a size only
PAYLOAD_KEYS = frozenset({"base64", "base64_data", "image_base64", "b64_json"})

_PRETTY_SKIP = ("timestamp", "level", "logger", "event")


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return lowered in SECRET_KEYS or lowered.endswith("_api_key")


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials and replace inline payloads with their length."""
    for key, value in list(event_dict.items()):
        if _is_secret(key):
            event_dict[key] = "***"
        elif key.lower() in PAYLOAD_KEYS and isinstance(value, (str, bytes)):
            event_dict[key] = f"<{len(value)} chars>"
    return event_dict


def render(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> str:
    """Compact JSON, or `LEVEL event key=value ...` on one line in pretty mode."""
    if not _pretty:
        return str(structlog.processors.JSONRenderer(sort_keys=False)(logger, method_name, event_dict))

    head = f"{event_dict.get('level', method_name).upper():<7} {event_dict.get('event', '-')}"
    fields = " ".join(
        f"{key}={value!r}" for key, value in event_dict.items() if key not in _PRETTY_SKIP
    )
    return f"{head} {fields}".rstrip()


def setup_logging(config: Config) -> None:
    """
    Configure structlog over stdlib logging.

    Args:
        config: Application configuration
    """
    global _pretty
    _pretty = config.enable_pretty_print

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redact_sensitive,
            render,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.save_to_file:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=config.log_file_path,
                maxBytes=config.max_log_file_size,
                backupCount=config.backup_count,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        handlers=handlers,
        format="%(message)s",
        force=True,
    )

    # Request lines are logged by the gateway itself
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@contextmanager
def request_context(**values: Any) -> Iterator[None]:
    """Attach values (request_id, model) to every log line inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


class TimedLogger:
    """
    Context manager that logs one event with elapsed_ms when the block ends.

    A block that raises logs at warning level with the exception type; the
    exception still propagates.
    """

    def __init__(self, logger: structlog.BoundLogger, event: str, **context: Any):
        self.logger = logger
        self.event = event
        self.context = context
        self.start_time: Optional[float] = None

    @property
    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return round((time.perf_counter() - self.start_time) * 1000, 2)

    def __enter__(self) -> "TimedLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self.logger.info(self.event, elapsed_ms=self.elapsed_ms, success=True, **self.context)
            return
        self.logger.warning(
            self.event,
            elapsed_ms=self.elapsed_ms,
            success=False,
            error_type=exc_type.__name__,
            **self.context,
        )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a configured structlog logger."""
    return structlog.get_logger(name)


def log_startup_message(message: str, **kwargs: Any) -> None:
    get_logger("startup").info(message, **kwargs)


def preview(text: Optional[str], limit: int = 100) -> str:
    """Truncate user text before it goes into a log line."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
