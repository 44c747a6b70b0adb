from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from opencode_orchestrator.backends.base import StreamEvent
from opencode_orchestrator.discovery import EnvironmentDiscovery
from opencode_orchestrator.server import create_app, parse_query
from opencode_orchestrator.service import QueryService
from opencode_orchestrator.settings import InMemorySettingsProvider, Settings


pytestmark = pytest.mark.anyio


class _NoCliDiscovery(EnvironmentDiscovery):
    async def find_executable(self, configured: str | None = None) -> str | None:
        return None


class _EchoHttp:
    name = "http"

    def __init__(self) -> None:
        self.envelopes = []

    async def stream(self, selection, envelope, token) -> AsyncIterator[StreamEvent]:
        self.envelopes.append(envelope)
        prompt = envelope.messages[-1].content
        if prompt == "fail":
            yield StreamEvent.failure("backend exploded")
            return
        yield StreamEvent.thinking("considering")
        yield StreamEvent.text(f"echo: {prompt}")
        yield StreamEvent.done()


@pytest.fixture
def backend() -> _EchoHttp:
    return _EchoHttp()


@pytest.fixture
def provider() -> InMemorySettingsProvider:
    return InMemorySettingsProvider(Settings())


@pytest.fixture
async def client(tmp_path: Path, backend: _EchoHttp, provider: InMemorySettingsProvider) -> AsyncIterator[AsyncClient]:
    service = QueryService(provider, discovery=_NoCliDiscovery(tmp_path), http_backend=backend, retry_delay=0)
    await service.initialize()
    app = create_app(service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client


def _frames(body: str) -> list[dict]:
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


async def test_health_reports_active_backend(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "ready": True,
        "model": "opencode/big-pickle",
        "provider": "opencode",
        "cli_available": False,
        "valid_config": True,
    }


async def test_models_lists_catalogue(client: AsyncClient) -> None:
    response = await client.get("/models")

    payload = response.json()
    assert payload["active"] == "opencode/big-pickle"
    assert {"id", "name", "provider", "is_free"} <= set(payload["models"][0])
    assert any(model["id"] == "opencode/big-pickle" for model in payload["models"])


async def test_query_streams_server_sent_events(client: AsyncClient, backend: _EchoHttp) -> None:
    response = await client.post(
        "/query",
        json={"prompt": "hello", "system_prompt": "be brief", "temperature": 0.1, "history": []},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert _frames(response.text) == [
        {"type": "thinking", "content": "considering"},
        {"type": "text", "content": "echo: hello"},
        {"type": "done"},
    ]
    (envelope,) = backend.envelopes
    assert envelope.temperature == 0.1
    assert envelope.messages[0].content == "be brief"


async def test_query_error_is_a_terminal_frame(client: AsyncClient) -> None:
    response = await client.post("/query", json={"prompt": "fail"})

    assert _frames(response.text) == [{"type": "error", "error": "backend exploded", "cancelled": False}]


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"prompt": "   "},
        {"prompt": "hi", "temperature": "hot"},
        {"prompt": "hi", "stream": "yes"},
        {"prompt": "hi", "history": [{"role": "robot", "content": "x"}]},
        {"prompt": "hi", "attachments": [{"data": "AAAA"}]},
    ],
)
async def test_query_rejects_invalid_payloads(client: AsyncClient, payload: dict) -> None:
    response = await client.post("/query", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


async def test_query_requires_json(client: AsyncClient) -> None:
    response = await client.post("/query", content="prompt=hi", headers={"content-type": "text/plain"})

    assert response.status_code == 400
    assert response.json()["details"] == "Request must be JSON."


async def test_stop_endpoint(client: AsyncClient) -> None:
    response = await client.post("/stop")

    assert response.json() == {"status": "stopped"}


async def test_switch_model_endpoint_persists(client: AsyncClient, provider: InMemorySettingsProvider) -> None:
    response = await client.post("/model", json={"model": "opencode/kimi-k2.5-free"})

    assert response.status_code == 200
    assert response.json() == {"model": "opencode/kimi-k2.5-free", "provider": "opencode", "backend": "http-provider"}
    assert provider.saves == 1

    rejected = await client.post("/model", json={"model": ""})
    assert rejected.status_code == 400


def test_parse_query_maps_optional_fields() -> None:
    prompt, options = parse_query(
        {
            "prompt": "review this",
            "model": "openai/gpt-5",
            "max_tokens": 100,
            "tools": ["read"],
            "thinking": True,
            "stream": False,
            "attachments": [{"mime_type": "text/plain", "data": "aGk=", "file_name": "a.txt"}],
            "history": [{"role": "assistant", "content": "earlier"}],
        }
    )

    assert prompt == "review this"
    assert options.model == "openai/gpt-5"
    assert options.max_tokens == 100
    assert options.tools == ("read",)
    assert options.thinking is True
    assert options.stream is False
    assert options.attachments[0].file_name == "a.txt"
    assert options.conversation_history[0].content == "earlier"


async def test_default_app_persists_model_switch_to_settings_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings_file = tmp_path / "settings.json"
    monkeypatch.setenv("OPENCODE_SETTINGS_PATH", str(settings_file))
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        response = await test_client.post("/model", json={"model": "opencode/glm-4.7-free"})

    assert response.status_code == 200
    assert json.loads(settings_file.read_text())["model"] == "opencode/glm-4.7-free"
