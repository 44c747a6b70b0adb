from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import aclosing
from pathlib import Path

import anyio
import pytest

from opencode_orchestrator.backends.base import QueryOptions, StreamEvent
from opencode_orchestrator.catalog import DEFAULT_FREE_MODEL, FREE_MODELS, ZEN_MODELS, ModelInfo
from opencode_orchestrator.discovery import EnvironmentDiscovery
from opencode_orchestrator.errors import TransportError
from opencode_orchestrator.service import QueryService
from opencode_orchestrator.settings import InMemorySettingsProvider, LocalModelSettings, Settings


pytestmark = pytest.mark.anyio


class _StubDiscovery(EnvironmentDiscovery):
    def __init__(self, home: Path, executable: str | None = None, cli_models: list[ModelInfo] | None = None) -> None:
        super().__init__(home)
        self.executable = executable
        self.cli_models = cli_models or []

    async def find_executable(self, configured: str | None = None) -> str | None:
        return self.executable

    async def list_cli_models(self, executable: str) -> list[ModelInfo]:
        return list(self.cli_models)


class _ScriptedHttp:
    """HTTP backend whose first call blocks until cancelled."""

    name = "http"

    def __init__(self, *, block_first: bool = False, error: Exception | None = None) -> None:
        self.block_first = block_first
        self.error = error
        self.prompts: list[str] = []

    async def stream(self, selection, envelope, token) -> AsyncIterator[StreamEvent]:
        self.prompts.append(envelope.messages[-1].content)
        call = len(self.prompts)
        if self.error is not None:
            raise self.error
        yield StreamEvent.text(f"answer {call}")
        if self.block_first and call == 1:
            with token.scope():
                await anyio.sleep_forever()
            token.raise_if_cancelled()
        yield StreamEvent.done()


def _service(
    tmp_path: Path,
    *,
    settings: Settings | None = None,
    executable: str | None = None,
    http=None,
    cli_models: list[ModelInfo] | None = None,
) -> tuple[QueryService, InMemorySettingsProvider]:
    provider = InMemorySettingsProvider(settings or Settings(temp_dir=str(tmp_path / "requests")))
    service = QueryService(
        provider,
        discovery=_StubDiscovery(tmp_path, executable, cli_models),
        http_backend=http or _ScriptedHttp(),
        retry_delay=0,
    )
    return service, provider


async def _collect(service: QueryService, prompt: str, options: QueryOptions | None = None) -> list[StreamEvent]:
    async with aclosing(service.query(prompt, options)) as events:
        return [event async for event in events]


async def test_query_before_initialise_yields_single_error(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)

    events = await _collect(service, "hello")

    assert events == [StreamEvent.failure("OpenCode service not initialized")]
    assert not service.is_ready()


async def test_http_only_query_streams_answer(tmp_path: Path) -> None:
    http = _ScriptedHttp()
    service, _ = _service(tmp_path, http=http)
    await service.initialize()

    events = await _collect(service, "hello")

    assert events == [StreamEvent.text("answer 1"), StreamEvent.done()]
    assert http.prompts == ["hello"]
    assert service.active_model() == DEFAULT_FREE_MODEL
    assert service.active_provider_id() == "opencode"


async def test_backend_failure_becomes_one_error_event(tmp_path: Path) -> None:
    http = _ScriptedHttp(error=TransportError("API error: 500 - boom", status_code=500))
    service, _ = _service(tmp_path, http=http)
    await service.initialize()

    events = await _collect(service, "hello")

    assert events == [StreamEvent.failure("API error: 500 - boom")]


async def test_new_query_supersedes_the_previous_one(tmp_path: Path) -> None:
    service, _ = _service(tmp_path, http=_ScriptedHttp(block_first=True))
    await service.initialize()

    first = service.query("one")
    with anyio.fail_after(10):
        assert await first.__anext__() == StreamEvent.text("answer 1")

        second = await _collect(service, "two")
        rest_of_first = [event async for event in first]

    assert second == [StreamEvent.text("answer 2"), StreamEvent.done()]
    assert rest_of_first == [StreamEvent.failure("Request cancelled", cancelled=True)]


async def test_stop_without_query_is_a_no_op(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    await service.initialize()

    service.stop()

    assert await _collect(service, "hello") == [StreamEvent.text("answer 1"), StreamEvent.done()]


@pytest.mark.skipif(os.name == "nt", reason="fake CLI relies on POSIX shebang scripts")
async def test_stop_terminates_the_cli_process(tmp_path: Path, fake_cli) -> None:
    executable = fake_cli(
        """
        import json, os, time
        from pathlib import Path
        Path(__file__).with_name("pid").write_text(str(os.getpid()))
        print(json.dumps({"type": "text", "part": {"text": "working"}}), flush=True)
        time.sleep(60)
        """
    )
    http = _ScriptedHttp()
    service, _ = _service(tmp_path, executable=executable, http=http)
    await service.initialize()

    received: list[StreamEvent] = []
    with anyio.fail_after(30):
        async with aclosing(service.query("hello")) as events:
            async for event in events:
                received.append(event)
                if event == StreamEvent.text("working"):
                    service.stop()

    assert received == [StreamEvent.text("working"), StreamEvent.failure("Request cancelled", cancelled=True)]
    assert http.prompts == []
    pid = int((Path(executable).parent / "pid").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert not any((tmp_path / "requests").iterdir())


@pytest.mark.skipif(os.name == "nt", reason="fake CLI relies on POSIX shebang scripts")
async def test_failing_cli_falls_back_to_http(tmp_path: Path, fake_cli) -> None:
    executable = fake_cli(
        """
        import sys
        sys.stderr.write("no credentials")
        sys.exit(1)
        """
    )
    http = _ScriptedHttp()
    service, _ = _service(tmp_path, executable=executable, http=http)
    await service.initialize()

    with anyio.fail_after(30):
        events = await _collect(service, "hello")

    assert events == [StreamEvent.text("answer 1"), StreamEvent.done()]
    assert http.prompts == ["hello"]


async def test_switch_model_persists_and_reresolves(tmp_path: Path) -> None:
    service, provider = _service(tmp_path)
    await service.initialize()

    selection = await service.switch_model("opencode/glm-4.7-free")

    assert provider.saves == 1
    assert provider.settings.model == "opencode/glm-4.7-free"
    assert selection.model == "opencode/glm-4.7-free"
    assert service.active_model() == "opencode/glm-4.7-free"


async def test_available_models_merge_sources(tmp_path: Path) -> None:
    settings = Settings(
        gateway_api_key="zen-key",
        local_model=LocalModelSettings(enabled=True, model="qwen2"),
    )
    cli_models = [
        ModelInfo(id="anthropic/claude-sonnet-4", name="anthropic/claude-sonnet-4", provider="anthropic"),
        ModelInfo(id=FREE_MODELS[0].id, name="duplicate", provider="opencode"),
    ]
    service, _ = _service(tmp_path, settings=settings, executable="/usr/bin/opencode", cli_models=cli_models)
    await service.initialize()

    ids = [model.id for model in service.available_models()]

    assert ids[: len(FREE_MODELS)] == [model.id for model in FREE_MODELS]
    assert all(model.id in ids for model in ZEN_MODELS)
    assert ids.count(FREE_MODELS[0].id) == 1
    assert "anthropic/claude-sonnet-4" in ids
    assert ids[-1] == "local/qwen2"


async def test_valid_config_reporting(tmp_path: Path) -> None:
    without_anything, _ = _service(tmp_path, settings=Settings(use_free_models=False))
    assert not without_anything.has_valid_config()
    await without_anything.initialize()
    assert not without_anything.has_valid_config()

    with_cli, _ = _service(tmp_path, settings=Settings(use_free_models=False), executable="/usr/bin/opencode")
    await with_cli.initialize()
    assert with_cli.has_valid_config()
    assert with_cli.executable == "/usr/bin/opencode"
