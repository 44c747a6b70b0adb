"""The query facade: the single entry point used by the server and the CLI."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

import httpx

from .backends.base import BackendKind, BackendSelection, ChatBackend, QueryOptions, StreamEvent
from .backends.cancellation import CancellationToken
from .backends.envelope import build_envelope
from .backends.http_client import HttpChatBackend
from .backends.orchestrator import RETRY_DELAY_SECONDS, FallbackOrchestrator
from .backends.process import ProcessRunner
from .backends.resolver import gateway_credentials, resolve_backend
from .catalog import FREE_MODELS, LOCAL_PROVIDER, ZEN_MODELS, ModelInfo
from .discovery import EnvironmentDiscovery
from .errors import InitializationError, OrchestratorError, QueryCancelledError
from .settings import InMemorySettingsProvider, Settings, SettingsProvider


logger = logging.getLogger(__name__)


@dataclass
class _FacadeState:
    """Everything the facade learns at initialisation plus the in-flight token."""

    executable: str | None = None
    config: dict[str, Any] | None = None
    auth: dict[str, Any] | None = None
    selection: BackendSelection | None = None
    available_models: list[ModelInfo] = field(default_factory=list)
    token: CancellationToken | None = None
    initialized: bool = False


class QueryService:
    """Owns at most one in-flight request.

    A new :meth:`query` call cancels the previous one instead of queueing
    behind it.  Every stream ends with exactly one terminal event; failures
    never escape as exceptions.
    """

    def __init__(
        self,
        settings_provider: SettingsProvider | None = None,
        *,
        discovery: EnvironmentDiscovery | None = None,
        http_backend: ChatBackend | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self._settings_provider = settings_provider or InMemorySettingsProvider(Settings.from_env())
        self._discovery = discovery or EnvironmentDiscovery()
        self._http = http_backend or HttpChatBackend(http_client)
        self._retry_delay = retry_delay
        self._state = _FacadeState()

    @property
    def settings(self) -> Settings:
        return self._settings_provider.settings

    @property
    def executable(self) -> str | None:
        return self._state.executable

    async def initialize(self) -> None:
        if self._state.initialized:
            return
        settings = self.settings
        state = self._state

        state.executable = await self._discovery.find_executable(settings.cli_path)
        if settings.auto_load_config:
            state.config = await self._discovery.load_config(settings.config_path)
            state.auth = await self._discovery.load_auth()
        state.selection = self._resolve()
        state.available_models = await self._load_models()
        state.initialized = True
        logger.info(
            "Query service initialised",
            extra={
                "executable": state.executable,
                "backend": state.selection.kind.value,
                "model": state.selection.model,
            },
        )

    def is_ready(self) -> bool:
        return self._state.initialized

    def has_valid_config(self) -> bool:
        """Whether some backend can plausibly serve a query."""

        selection = self._state.selection
        if selection is None:
            return False
        return (
            selection.is_local
            or self._state.executable is not None
            or bool(selection.credentials)
            or self.settings.use_free_models
        )

    def available_models(self) -> list[ModelInfo]:
        return list(self._state.available_models)

    def active_model(self) -> str:
        return (self._state.selection or self._resolve()).model

    def active_provider_id(self) -> str:
        return (self._state.selection or self._resolve()).provider

    async def switch_model(self, model_id: str) -> BackendSelection:
        """Persist ``model_id`` as the selected model and re-resolve the backend."""

        self.settings.model = model_id
        await self._settings_provider.save()
        self._state.selection = self._resolve()
        logger.info(
            "Switched model",
            extra={"model": self._state.selection.model, "provider": self._state.selection.provider},
        )
        return self._state.selection

    def stop(self) -> None:
        token = self._state.token
        if token is not None:
            logger.info("Stopping in-flight query")
            token.cancel()

    async def query(self, prompt: str, options: QueryOptions | None = None) -> AsyncIterator[StreamEvent]:
        if not self._state.initialized:
            yield StreamEvent.failure(InitializationError().message)
            return

        options = options or QueryOptions()
        previous = self._state.token
        if previous is not None:
            logger.info("Superseding in-flight query")
            previous.cancel()
        token = CancellationToken()
        self._state.token = token

        try:
            selection = self._resolve(options)
            envelope = build_envelope(prompt, options, selection)
            async with aclosing(self._orchestrator(selection).query(selection, envelope, token)) as events:
                async for event in events:
                    yield event
                    if event.is_terminal:
                        return
        except QueryCancelledError as exc:
            yield StreamEvent.failure(exc.message, cancelled=True)
        except OrchestratorError as exc:
            logger.warning("Query failed", extra={"error_code": exc.code, "error": exc.message})
            yield StreamEvent.failure(exc.message)
        except Exception as exc:  # pragma: no cover - defensive safeguard
            logger.exception("Unexpected query failure")
            yield StreamEvent.failure(str(exc) or "Unknown error")
        finally:
            if self._state.token is token:
                self._state.token = None

    def _resolve(self, options: QueryOptions | None = None) -> BackendSelection:
        options = options or QueryOptions()
        return resolve_backend(
            options.model,
            self.settings,
            auth=self._state.auth,
            config=self._state.config,
            executable=self._state.executable,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )

    def _orchestrator(self, selection: BackendSelection) -> FallbackOrchestrator:
        settings = self.settings
        runner = None
        if self._state.executable and selection.kind is BackendKind.CLI:
            runner = ProcessRunner(
                self._state.executable,
                timeout=settings.cli_timeout,
                temp_dir=settings.temp_dir,
            )
        return FallbackOrchestrator(
            runner,
            self._http,
            allow_http_fallback=not settings.disable_api_fallback,
            retry_delay=self._retry_delay,
        )

    async def _load_models(self) -> list[ModelInfo]:
        settings = self.settings
        models = list(FREE_MODELS)
        if gateway_credentials(settings, self._state.auth):
            models.extend(ZEN_MODELS)
        if self._state.executable:
            known = {model.id for model in models}
            for model in await self._discovery.list_cli_models(self._state.executable):
                if model.id not in known:
                    models.append(model)
                    known.add(model.id)
        if settings.local_model.enabled:
            name = settings.local_model.model
            models.append(ModelInfo(id=f"{LOCAL_PROVIDER}/{name}", name=f"Local: {name}", provider=LOCAL_PROVIDER))
        return models


__all__ = ["QueryService"]
