"""
Error taxonomy for the streaming gateway.

Following PROJECT_RULES.md:
- Fail fast with explicit errors before any network call
- Errors carry a client-safe message and an HTTP status
"""

from typing import Optional


class GatewayError(Exception):
    """Base error. Subclasses map to a JSON error response when raised before streaming."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationMissing(GatewayError):
    """Required credential environment variable is not set."""

    status_code = 503

    def __init__(self, env_var: str, provider: str):
        super().__init__(f"{env_var} is not set. {provider} models are not available.")
        self.env_var = env_var
        self.provider = provider


class InvalidInput(GatewayError):
    """No usable text or attachment, or attachment incompatible with the adapter."""

    status_code = 400


class UpstreamError(GatewayError):
    """Non-2xx response, transport failure or SDK rejection from a backend."""

    status_code = 502

    def __init__(self, message: str, provider: str, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class StreamDecodeError(GatewayError):
    """A single malformed stream frame. Never aborts the stream."""


class PartialTimeout(GatewayError):
    """No bytes arrived within the idle window. Ends the read loop, not the request."""

    def __init__(self, idle_timeout: float):
        super().__init__(f"No data received for {idle_timeout}s")
        self.idle_timeout = idle_timeout
