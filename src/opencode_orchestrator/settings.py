"""Runtime settings and the providers that persist them.

Settings come from ``OPENCODE_*`` environment variables (``.env`` files are
loaded by the CLI entry point) or from a JSON settings file.  The query facade
only ever reads them through a :class:`SettingsProvider`, which is also how
``switch_model`` persists a new selection.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import anyio


logger = logging.getLogger(__name__)

DEFAULT_CLI_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_TEMPERATURE: Final[float] = 0.7
DEFAULT_SETTINGS_PATH: Final[Path] = Path.home() / ".config" / "opencode-orchestrator" / "settings.json"
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


@dataclass
class LocalModelSettings:
    enabled: bool = False
    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    model: str = "llama2"


@dataclass
class Settings:
    model: str = "auto"
    use_free_models: bool = True
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int | None = None
    cli_path: str | None = None
    cli_timeout: float = DEFAULT_CLI_TIMEOUT_SECONDS
    temp_dir: str | None = None
    disable_api_fallback: bool = False
    gateway_api_key: str | None = field(default=None, repr=False)
    config_path: str | None = None
    auto_load_config: bool = True
    local_model: LocalModelSettings = field(default_factory=LocalModelSettings)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            model=env.get("OPENCODE_MODEL") or defaults.model,
            use_free_models=_env_bool(env, "OPENCODE_USE_FREE_MODELS", defaults.use_free_models),
            temperature=_env_float(env, "OPENCODE_TEMPERATURE", defaults.temperature),
            max_tokens=_env_int(env, "OPENCODE_MAX_TOKENS"),
            cli_path=env.get("OPENCODE_CLI_PATH") or None,
            cli_timeout=_env_float(env, "OPENCODE_CLI_TIMEOUT", defaults.cli_timeout),
            temp_dir=env.get("OPENCODE_TEMP_DIR") or None,
            disable_api_fallback=_env_bool(env, "OPENCODE_DISABLE_API_FALLBACK", False),
            gateway_api_key=env.get("OPENCODE_ZEN_API_KEY") or None,
            config_path=env.get("OPENCODE_CONFIG_PATH") or None,
            auto_load_config=_env_bool(env, "OPENCODE_AUTO_LOAD_CONFIG", True),
            local_model=LocalModelSettings(
                enabled=_env_bool(env, "OPENCODE_LOCAL_MODEL_ENABLED", False),
                provider=env.get("OPENCODE_LOCAL_MODEL_PROVIDER") or defaults.local_model.provider,
                base_url=env.get("OPENCODE_LOCAL_MODEL_BASE_URL") or defaults.local_model.base_url,
                model=env.get("OPENCODE_LOCAL_MODEL_NAME") or defaults.local_model.model,
            ),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Settings:
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in data.items() if key in known and key != "local_model"}
        local = data.get("local_model")
        if isinstance(local, Mapping):
            local_known = {item.name for item in fields(LocalModelSettings)}
            values["local_model"] = LocalModelSettings(
                **{key: value for key, value in local.items() if key in local_known}
            )
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; using default", key, raw)
        return default


def _env_int(env: Mapping[str, str], key: str) -> int | None:
    raw = env.get(key)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; ignoring", key, raw)
        return None


@runtime_checkable
class SettingsProvider(Protocol):
    """Source of settings for the facade; ``save`` persists in-place changes."""

    settings: Settings

    async def save(self) -> None:
        """Persist the current ``settings``."""


class InMemorySettingsProvider:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.saves = 0

    async def save(self) -> None:
        self.saves += 1


class JsonSettingsProvider:
    """Settings stored as a JSON document on disk."""

    def __init__(self, path: str | os.PathLike[str], settings: Settings) -> None:
        self.path = Path(path)
        self.settings = settings

    @classmethod
    async def load(cls, path: str | os.PathLike[str]) -> JsonSettingsProvider:
        provider = cls(path, Settings.from_env())
        await provider.reload()
        return provider

    async def reload(self) -> None:
        """Replace ``settings`` with the file contents; keep them when the file is unusable."""

        path = str(self.path)
        file_path = anyio.Path(self.path)
        if not await file_path.exists():
            logger.info("Settings file not found; using environment", extra={"path": path})
            return
        try:
            data = json.loads(await file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read settings file", extra={"path": path, "error": str(exc)})
            return
        if not isinstance(data, Mapping):
            logger.error("Settings file does not contain an object", extra={"path": path})
            return
        self.settings = Settings.from_dict(data)

    async def save(self) -> None:
        file_path = anyio.Path(self.path)
        await file_path.parent.mkdir(parents=True, exist_ok=True)
        await file_path.write_text(json.dumps(self.settings.to_dict(), indent=2), encoding="utf-8")
        logger.info("Settings saved", extra={"path": str(self.path)})


def settings_path_from_env() -> Path:
    return Path(os.environ.get("OPENCODE_SETTINGS_PATH") or DEFAULT_SETTINGS_PATH)


__all__ = [
    "DEFAULT_CLI_TIMEOUT_SECONDS",
    "DEFAULT_SETTINGS_PATH",
    "DEFAULT_TEMPERATURE",
    "InMemorySettingsProvider",
    "JsonSettingsProvider",
    "LocalModelSettings",
    "Settings",
    "SettingsProvider",
    "settings_path_from_env",
]
