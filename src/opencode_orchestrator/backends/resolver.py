"""Pure backend selection from settings, on-disk configuration and credentials."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Final

from opencode_orchestrator.catalog import (
    AUTO_MODEL,
    DEFAULT_FREE_MODEL,
    GATEWAY_CHAT_ENDPOINT,
    GATEWAY_PROVIDER,
    LOCAL_PROVIDER,
    get_model_by_id,
    get_model_endpoint,
    split_model_id,
)
from opencode_orchestrator.settings import Settings

from .base import BackendKind, BackendSelection


logger = logging.getLogger(__name__)

# Providers whose models are served through the hosted gateway.
GATEWAY_PROVIDERS: Final[frozenset[str]] = frozenset({GATEWAY_PROVIDER, "deepseek"})
_LOCAL_CHAT_PATH: Final[str] = "/v1/chat/completions"


def default_model(settings: Settings, config: Mapping[str, Any] | None = None) -> str:
    """Model used when the caller asks for none (or for ``auto``)."""

    if settings.use_free_models:
        return DEFAULT_FREE_MODEL
    if config and isinstance(config.get("model"), str) and config["model"]:
        return config["model"]
    return DEFAULT_FREE_MODEL


def requested_or_default(
    requested_model: str | None,
    settings: Settings,
    config: Mapping[str, Any] | None = None,
) -> str:
    model = (requested_model or "").strip()
    if not model or model == AUTO_MODEL:
        model = settings.model.strip() if settings.model else ""
    if not model or model == AUTO_MODEL:
        model = default_model(settings, config)
    return model


def gateway_credentials(settings: Settings, auth: Mapping[str, Any] | None) -> str | None:
    if settings.gateway_api_key:
        return settings.gateway_api_key
    return _auth_key(auth, GATEWAY_PROVIDER)


def resolve_backend(
    requested_model: str | None,
    settings: Settings,
    auth: Mapping[str, Any] | None = None,
    config: Mapping[str, Any] | None = None,
    *,
    executable: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> BackendSelection:
    """Pick the backend for one request.  Never raises.

    ``executable`` only decides whether the CLI is the primary backend; the
    HTTP parameters are computed the same way either way.
    """

    temperature = settings.temperature if temperature is None else temperature
    max_tokens = max_tokens if max_tokens is not None else settings.max_tokens

    local = settings.local_model
    if local.enabled:
        return BackendSelection(
            kind=BackendKind.HTTP_LOCAL,
            model=f"{LOCAL_PROVIDER}/{local.model}",
            provider=LOCAL_PROVIDER,
            temperature=temperature,
            max_tokens=max_tokens,
            endpoint=local.base_url.rstrip("/") + _LOCAL_CHAT_PATH,
        )

    kind = BackendKind.CLI if executable else BackendKind.HTTP_PROVIDER
    model = requested_or_default(requested_model, settings, config)
    provider_id, _ = split_model_id(model)

    if provider_id in GATEWAY_PROVIDERS:
        return _gateway_selection(kind, model, settings, auth, temperature, max_tokens)

    provider_config = _provider_config(config, provider_id)
    if provider_config is None:
        logger.warning(
            "Provider not found in configuration; using the hosted gateway",
            extra={"provider": provider_id, "model": model},
        )
        return _gateway_selection(kind, model, settings, auth, temperature, max_tokens)

    options = provider_config.get("options")
    options = options if isinstance(options, Mapping) else {}
    credentials = _auth_key(auth, provider_id) or _string(options.get("apiKey"))
    base_url = _string(options.get("baseURL"))
    endpoint = f"{base_url.rstrip('/')}/chat/completions" if base_url else get_model_endpoint(model)

    logger.debug("Resolved configured provider", extra={"provider": provider_id, "model": model})
    return BackendSelection(
        kind=kind,
        model=model,
        provider=provider_id,
        temperature=temperature,
        max_tokens=max_tokens,
        credentials=credentials,
        endpoint=endpoint,
    )


def _gateway_selection(
    kind: BackendKind,
    model: str,
    settings: Settings,
    auth: Mapping[str, Any] | None,
    temperature: float,
    max_tokens: int | None,
) -> BackendSelection:
    known = get_model_by_id(model)
    endpoint = known.endpoint if known is not None and known.endpoint else GATEWAY_CHAT_ENDPOINT
    return BackendSelection(
        kind=kind,
        model=model,
        provider=GATEWAY_PROVIDER,
        temperature=temperature,
        max_tokens=max_tokens,
        credentials=gateway_credentials(settings, auth),
        endpoint=endpoint,
    )


def _provider_config(config: Mapping[str, Any] | None, provider_id: str) -> Mapping[str, Any] | None:
    if not config:
        return None
    providers = config.get("provider")
    if not isinstance(providers, Mapping):
        return None
    entry = providers.get(provider_id)
    return entry if isinstance(entry, Mapping) else None


def _auth_key(auth: Mapping[str, Any] | None, provider_id: str) -> str | None:
    if not auth:
        return None
    entry = auth.get(provider_id)
    if isinstance(entry, Mapping):
        return _string(entry.get("apiKey")) or _string(entry.get("key"))
    return None


def _string(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


__all__ = [
    "GATEWAY_PROVIDERS",
    "default_model",
    "gateway_credentials",
    "requested_or_default",
    "resolve_backend",
]
