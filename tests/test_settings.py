from __future__ import annotations

import json
from pathlib import Path

import pytest

from opencode_orchestrator.settings import (
    DEFAULT_SETTINGS_PATH,
    JsonSettingsProvider,
    LocalModelSettings,
    Settings,
    settings_path_from_env,
)


def test_from_env_reads_prefixed_variables() -> None:
    env = {
        "OPENCODE_MODEL": "openai/gpt-5",
        "OPENCODE_USE_FREE_MODELS": "false",
        "OPENCODE_TEMPERATURE": "0.25",
        "OPENCODE_MAX_TOKENS": "2048",
        "OPENCODE_CLI_TIMEOUT": "45",
        "OPENCODE_DISABLE_API_FALLBACK": "yes",
        "OPENCODE_ZEN_API_KEY": "zen-key",
        "OPENCODE_LOCAL_MODEL_ENABLED": "1",
        "OPENCODE_LOCAL_MODEL_NAME": "qwen2",
    }

    settings = Settings.from_env(env)

    assert settings.model == "openai/gpt-5"
    assert settings.use_free_models is False
    assert settings.temperature == 0.25
    assert settings.max_tokens == 2048
    assert settings.cli_timeout == 45.0
    assert settings.disable_api_fallback is True
    assert settings.gateway_api_key == "zen-key"
    assert settings.local_model == LocalModelSettings(enabled=True, model="qwen2")


def test_from_env_ignores_invalid_numbers() -> None:
    settings = Settings.from_env({"OPENCODE_TEMPERATURE": "warm", "OPENCODE_MAX_TOKENS": "lots"})

    assert settings.temperature == 0.7
    assert settings.max_tokens is None


def test_from_env_defaults() -> None:
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.auto_load_config is True


def test_from_dict_ignores_unknown_keys() -> None:
    settings = Settings.from_dict(
        {"model": "opencode/gpt-5-nano", "theme": "dark", "local_model": {"enabled": True, "colour": "red"}}
    )

    assert settings.model == "opencode/gpt-5-nano"
    assert settings.local_model.enabled is True


def test_api_key_not_in_repr() -> None:
    assert "zen-secret" not in repr(Settings(gateway_api_key="zen-secret"))


@pytest.mark.anyio
async def test_json_provider_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    provider = await JsonSettingsProvider.load(path)
    provider.settings.model = "opencode/kimi-k2.5-free"

    await provider.save()
    reloaded = await JsonSettingsProvider.load(path)

    assert json.loads(path.read_text())["model"] == "opencode/kimi-k2.5-free"
    assert reloaded.settings.model == "opencode/kimi-k2.5-free"


@pytest.mark.anyio
async def test_json_provider_falls_back_on_corrupt_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENCODE_MODEL", "opencode/glm-4.7-free")
    path = tmp_path / "settings.json"
    path.write_text("{not json")

    provider = await JsonSettingsProvider.load(path)

    assert provider.settings.model == "opencode/glm-4.7-free"


@pytest.mark.anyio
async def test_json_provider_reload_picks_up_file(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    provider = JsonSettingsProvider(path, Settings())
    path.write_text(json.dumps({"model": "openai/gpt-5", "cli_timeout": 30}))

    await provider.reload()

    assert provider.settings.model == "openai/gpt-5"
    assert provider.settings.cli_timeout == 30


def test_settings_path_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENCODE_SETTINGS_PATH", raising=False)
    assert settings_path_from_env() == DEFAULT_SETTINGS_PATH

    monkeypatch.setenv("OPENCODE_SETTINGS_PATH", str(tmp_path / "s.json"))
    assert settings_path_from_env() == tmp_path / "s.json"
