"""
End-to-end tests: HTTP form in, real router and adapters, mocked backends, ND-JSON out.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from common.config import Config
from gateway.app import create_gateway_app
from router.request_router import RequestRouter


def sse(*frames) -> bytes:
    body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames)
    return (body + "data: [DONE]\n\n").encode("utf-8")


def delta(content: str, completion_id: str = "cmpl-9") -> dict:
    return {"id": completion_id, "choices": [{"delta": {"content": content}}]}


def backend(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(test_config: Config, handler) -> TestClient:
    router = RequestRouter(test_config, http_client=backend(handler))
    return TestClient(create_gateway_app(test_config, router))


def lines(response) -> list:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def test_openrouter_vision_round_trip(test_config: Config, clean_env) -> None:
    """An image question streams back through the OpenRouter adapter."""
    clean_env.setenv("OPENROUTER_API_KEY", "or-key")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, content=sse(delta("A "), delta("cat.")))

    client = make_client(test_config, handler)
    response = client.post(
        "/api/chat",
        data={
            "message": "What animal?",
            "modelName": "qwen/qwen2.5-vl-72b-instruct:free",
            "base64": "aW1hZ2U=",
            "convertedType": "image/png",
        },
    )

    assert response.status_code == 200
    assert lines(response) == [{"text": "A "}, {"text": "cat."}]
    assert seen[0]["model"] == "qwen/qwen2.5-vl-72b-instruct:free"
    assert seen[0]["messages"][-1]["content"][1]["image_url"]["url"] == "data:image/png;base64,aW1hZ2U="


def test_perplexity_citations_round_trip(test_config: Config, clean_env) -> None:
    """Cited answers are followed by citations, the rewrite and a sources list."""
    clean_env.setenv("PERPLEXITY_API_KEY", "pplx-key")

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload.get("stream"):
            return httpx.Response(200, content=sse(delta(" Fusion [1]"), delta(" is hot [2].")))
        return httpx.Response(200, json={"id": "cmpl-9", "citations": ["https://iter.org", "https://nif.gov"]})

    client = make_client(test_config, handler)
    response = client.post("/api/chat", data={"message": "Fusion news?", "modelName": "sonar-pro"})

    chunks = lines(response)
    assert chunks[0] == {"text": "Fusion [1]"}
    assert chunks[1] == {"text": " is hot [2]."}
    assert chunks[2] == {"sourceCitations": ["https://iter.org", "https://nif.gov"]}
    assert chunks[6] == {"text": "Fusion [1](https://iter.org) is hot [2](https://nif.gov)."}
    assert chunks[7]["webSearchQueries"] == ["View Sources"]
    assert len(chunks) == 8


def test_upstream_rejection_is_json_error(test_config: Config, clean_env) -> None:
    """A backend 4xx before any output becomes a 502 JSON error."""
    clean_env.setenv("TOGETHER_API_KEY", "bad")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key provided"}})

    client = make_client(test_config, handler)
    response = client.post(
        "/api/chat",
        data={"message": "Hi", "modelName": "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free"},
    )

    assert response.status_code == 502
    assert "Invalid API key provided" in response.json()["error"]


def test_replicate_job_round_trip(test_config: Config, clean_env) -> None:
    """Image jobs return a handle, then the status endpoint reports progress."""
    clean_env.setenv("REPLICATE_API_TOKEN", "r8")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "job-1", "status": "starting"})
        return httpx.Response(200, json={"id": "job-1", "status": "processing", "logs": "step 3"})

    client = make_client(test_config, handler)
    response = client.post("/api/chat", data={"message": "a cat astronaut", "modelName": "bytedance/bagel"})

    assert lines(response) == [
        {"text": "Your image is being generated...", "prediction": {"id": "job-1", "status": "starting"}}
    ]

    status = client.get("/api/predictions/job-1")
    assert status.status_code == 200
    assert status.json()["status"] == "processing"


@pytest.mark.parametrize("selector", ["gpt-4o-mini", "black-forest-labs/flux-kontext-pro", "sonar"])
def test_missing_keys_never_reach_backend(test_config: Config, clean_env, selector: str) -> None:
    """Credential checks happen before any upstream request."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    client = make_client(test_config, handler)
    response = client.post("/api/chat", data={"message": "Hi", "modelName": selector})

    assert response.status_code == 503
    assert calls == []
