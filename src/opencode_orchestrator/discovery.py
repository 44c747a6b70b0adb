"""Locate the OpenCode CLI and load its on-disk configuration and credentials."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import anyio

from .catalog import ModelInfo


logger = logging.getLogger(__name__)

EXECUTABLE_NAME: Final[str] = "opencode"
_MODEL_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"(\S+/\S+)")
_MODELS_TIMEOUT_SECONDS: Final[float] = 30.0


class EnvironmentDiscovery:
    """Filesystem lookups performed once during facade initialisation.

    ``home`` defaults to the user's home directory; tests point it at a
    temporary directory.
    """

    def __init__(self, home: str | os.PathLike[str] | None = None) -> None:
        self.home = Path(home) if home is not None else Path.home()

    @property
    def config_path(self) -> Path:
        return self.home / ".config" / "opencode" / "opencode.json"

    @property
    def auth_paths(self) -> tuple[Path, ...]:
        return (
            self.home / ".local" / "share" / "opencode" / "auth.json",
            self.home / ".config" / "opencode" / "auth.json",
        )

    async def find_executable(self, configured: str | None = None) -> str | None:
        if configured:
            if await anyio.Path(configured).exists():
                return configured
            logger.warning("Configured CLI path does not exist", extra={"path": configured})
        found = await anyio.to_thread.run_sync(shutil.which, EXECUTABLE_NAME)
        if found:
            logger.info("Found OpenCode CLI on PATH", extra={"path": found})
        else:
            logger.warning("OpenCode CLI not found in PATH")
        return found

    async def load_config(self, path: str | os.PathLike[str] | None = None) -> dict[str, Any] | None:
        return await _load_json(Path(path) if path else self.config_path, "config")

    async def load_auth(self) -> dict[str, Any] | None:
        for candidate in self.auth_paths:
            if await anyio.Path(candidate).exists():
                return await _load_json(candidate, "auth")
        return None

    async def list_cli_models(self, executable: str) -> list[ModelInfo]:
        """Models reported by ``<cli> models``; empty when the CLI misbehaves."""

        try:
            with anyio.fail_after(_MODELS_TIMEOUT_SECONDS):
                result = await anyio.run_process([executable, "models", "--format", "json"], check=False)
                if result.returncode != 0:
                    result = await anyio.run_process([executable, "models"], check=False)
        except (OSError, TimeoutError) as exc:
            logger.warning("Failed to list CLI models", extra={"error": str(exc)})
            return []
        return parse_model_listing(result.stdout.decode("utf-8", errors="replace"))


def parse_model_listing(output: str) -> list[ModelInfo]:
    """Parse a JSON array of models, or ``provider/model`` tokens one per line."""

    try:
        decoded = json.loads(output)
    except json.JSONDecodeError:
        decoded = None

    models: list[ModelInfo] = []
    if isinstance(decoded, list):
        for item in decoded:
            if isinstance(item, str):
                models.append(ModelInfo(id=item, name=item, provider=item.partition("/")[0]))
            elif isinstance(item, Mapping):
                model_id = item.get("id") or f"{item.get('provider')}/{item.get('name')}"
                models.append(
                    ModelInfo(
                        id=model_id,
                        name=item.get("name") or model_id,
                        provider=item.get("provider") or "unknown",
                    )
                )
        return models

    for line in output.splitlines():
        match = _MODEL_ID_PATTERN.search(line)
        if match:
            model_id = match.group(1)
            models.append(ModelInfo(id=model_id, name=model_id, provider=model_id.split("/")[0]))
    return models


async def _load_json(path: Path, label: str) -> dict[str, Any] | None:
    file_path = anyio.Path(path)
    if not await file_path.exists():
        return None
    try:
        data = json.loads(await file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to load OpenCode %s", label, extra={"path": str(path), "error": str(exc)})
        return None
    if not isinstance(data, dict):
        logger.error("OpenCode %s is not a JSON object", label, extra={"path": str(path)})
        return None
    logger.info("Loaded OpenCode %s", label, extra={"path": str(path)})
    return data


__all__ = ["EXECUTABLE_NAME", "EnvironmentDiscovery", "parse_model_listing"]
