"""Known models and the endpoints that serve them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final


GATEWAY_PROVIDER: Final[str] = "opencode"
GATEWAY_BASE_URL: Final[str] = "https://opencode.ai/zen/v1"
GATEWAY_CHAT_ENDPOINT: Final[str] = f"{GATEWAY_BASE_URL}/chat/completions"
DEFAULT_FREE_MODEL: Final[str] = "opencode/big-pickle"
AUTO_MODEL: Final[str] = "auto"
LOCAL_PROVIDER: Final[str] = "local"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    is_free: bool = False
    endpoint: str | None = None
    input_price: float | None = None
    output_price: float | None = None


def _gateway(model_id: str, name: str, route: str, prices: tuple[float, float] | None = None) -> ModelInfo:
    input_price, output_price = prices if prices is not None else (0.0, 0.0)
    return ModelInfo(
        id=f"{GATEWAY_PROVIDER}/{model_id}",
        name=name,
        provider=GATEWAY_PROVIDER,
        is_free=prices is None,
        endpoint=f"{GATEWAY_BASE_URL}/{route}",
        input_price=input_price,
        output_price=output_price,
    )


FREE_MODELS: Final[tuple[ModelInfo, ...]] = (
    _gateway("gpt-5-nano", "GPT-5 Nano (Free)", "responses"),
    _gateway("glm-4.7-free", "GLM 4.7 Free", "chat/completions"),
    _gateway("kimi-k2.5-free", "Kimi K2.5 Free", "chat/completions"),
    _gateway("minimax-m2.1-free", "MiniMax M2.1 Free", "messages"),
    _gateway("big-pickle", "Big Pickle (Free)", "chat/completions"),
)

ZEN_MODELS: Final[tuple[ModelInfo, ...]] = (
    _gateway("gpt-5.2", "GPT 5.2", "responses", (1.75, 14.00)),
    _gateway("gpt-5.2-codex", "GPT 5.2 Codex", "responses", (1.75, 14.00)),
    _gateway("gpt-5.1", "GPT 5.1", "responses", (1.07, 8.50)),
    _gateway("gpt-5.1-codex", "GPT 5.1 Codex", "responses", (1.07, 8.50)),
    _gateway("gpt-5", "GPT 5", "responses", (1.07, 8.50)),
    _gateway("gpt-5-codex", "GPT 5 Codex", "responses", (1.07, 8.50)),
    _gateway("claude-sonnet-4-5", "Claude Sonnet 4.5", "messages", (3.00, 15.00)),
    _gateway("claude-sonnet-4", "Claude Sonnet 4", "messages", (3.00, 15.00)),
    _gateway("claude-haiku-4-5", "Claude Haiku 4.5", "messages", (1.00, 5.00)),
    _gateway("claude-opus-4-5", "Claude Opus 4.5", "messages", (5.00, 25.00)),
    _gateway("gemini-3-pro", "Gemini 3 Pro", "models/gemini-3-pro", (2.00, 12.00)),
    _gateway("gemini-3-flash", "Gemini 3 Flash", "models/gemini-3-flash", (0.50, 3.00)),
    _gateway("minimax-m2.1", "MiniMax M2.1", "chat/completions", (0.30, 1.20)),
    _gateway("glm-4.7", "GLM 4.7", "chat/completions", (0.60, 2.20)),
    _gateway("kimi-k2.5", "Kimi K2.5", "chat/completions", (0.60, 3.00)),
    _gateway("qwen3-coder", "Qwen3 Coder 480B", "chat/completions", (0.45, 1.50)),
)

POPULAR_MODELS: Final[tuple[ModelInfo, ...]] = (
    ModelInfo(id="anthropic/claude-sonnet-4", name="Claude Sonnet 4", provider="anthropic"),
    ModelInfo(id="anthropic/claude-opus-4", name="Claude Opus 4", provider="anthropic"),
    ModelInfo(id="openai/gpt-5", name="GPT-5", provider="openai"),
    ModelInfo(id="openai/gpt-5-mini", name="GPT-5 Mini", provider="openai"),
    ModelInfo(id="google/gemini-3-pro", name="Gemini 3 Pro", provider="google"),
)

_PROVIDER_ENDPOINTS: Final[dict[str, str]] = {
    GATEWAY_PROVIDER: GATEWAY_CHAT_ENDPOINT,
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    "google": "https://generativelanguage.googleapis.com/v1beta/models",
}
_FALLBACK_ENDPOINT: Final[str] = "https://api.openai.com/v1/chat/completions"


def get_all_models(include_zen: bool = True) -> list[ModelInfo]:
    models = list(FREE_MODELS)
    if include_zen:
        models.extend(ZEN_MODELS)
    models.extend(POPULAR_MODELS)
    return models


def get_model_by_id(model_id: str) -> ModelInfo | None:
    for model in get_all_models():
        if model.id == model_id:
            return model
    return None


def get_model_endpoint(model_id: str) -> str:
    model = get_model_by_id(model_id)
    if model is not None and model.endpoint:
        return model.endpoint
    provider, _, _ = model_id.partition("/")
    return _PROVIDER_ENDPOINTS.get(provider, _FALLBACK_ENDPOINT)


def split_model_id(model_id: str) -> tuple[str, str]:
    """Split ``provider/model`` into its parts; bare ids use the ``default`` model."""

    provider, sep, name = model_id.partition("/")
    if not sep:
        return model_id, "default"
    return provider, name


__all__ = [
    "AUTO_MODEL",
    "DEFAULT_FREE_MODEL",
    "FREE_MODELS",
    "GATEWAY_BASE_URL",
    "GATEWAY_CHAT_ENDPOINT",
    "GATEWAY_PROVIDER",
    "LOCAL_PROVIDER",
    "ModelInfo",
    "POPULAR_MODELS",
    "ZEN_MODELS",
    "get_all_models",
    "get_model_by_id",
    "get_model_endpoint",
    "split_model_id",
]
