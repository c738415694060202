"""
Shared fixtures and fake adapters.
"""

import asyncio
from typing import AsyncGenerator, List, Optional

import pytest

from adapters.base import AdapterRequest, AdapterResponse, BaseAdapter, EventKind
from common.config import Config
from common.errors import GatewayError
from common.models import AsyncJob, JobStatus
from router.message_types import AdapterFamily
from router.request_router import CREDENTIALS, RequestRouter


class ScriptedAdapter(BaseAdapter):
    """Adapter that replays a fixed list of events, optionally failing partway."""

    provider_name = "scripted"
    credential_env = "SCRIPTED_API_KEY"

    def __init__(
        self,
        events: Optional[List[AdapterResponse]] = None,
        fail_with: Optional[Exception] = None,
        fail_after: int = 0,
        accepts_attachments: bool = True,
    ):
        super().__init__(api_key="test")
        self.events = events if events is not None else [
            AdapterResponse(kind=EventKind.TEXT_DELTA, content="Hello"),
            AdapterResponse(kind=EventKind.TEXT_DELTA, content=" world"),
            AdapterResponse(kind=EventKind.COMPLETION, finish_reason="stop"),
        ]
        self.fail_with = fail_with
        self.fail_after = fail_after
        self.accepts_attachments = accepts_attachments
        self.requests: List[AdapterRequest] = []
        self.closed = False

    async def generate(
        self, request: AdapterRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncGenerator[AdapterResponse, None]:
        self.requests.append(request)
        for index, event in enumerate(self.events):
            if self.fail_with is not None and index == self.fail_after:
                raise self.fail_with
            yield event
        if self.fail_with is not None and self.fail_after >= len(self.events):
            raise self.fail_with

    async def get_job(self, job_id: str) -> AsyncJob:
        if isinstance(self.fail_with, GatewayError):
            raise self.fail_with
        if job_id == "failed":
            return AsyncJob(id=job_id, status=JobStatus.FAILED, error="NSFW content detected")
        return AsyncJob(id=job_id, status=JobStatus.SUCCEEDED, output=["https://out/1.webp"])

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def test_config() -> Config:
    """Create a test configuration."""
    return Config()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every provider credential from the environment."""
    for env_var in set(CREDENTIALS.values()):
        monkeypatch.delenv(env_var, raising=False)
    return monkeypatch


@pytest.fixture
def router(test_config: Config, clean_env) -> RequestRouter:
    """Router with no credentials configured."""
    return RequestRouter(test_config)


def install(router: RequestRouter, family: AdapterFamily, adapter: BaseAdapter) -> BaseAdapter:
    router.register_adapter(family, adapter)
    return adapter
