"""Route prompts to the OpenCode CLI or HTTP chat endpoints as one event stream."""

from __future__ import annotations

from opencode_orchestrator.backends.base import (
    Attachment,
    BackendKind,
    BackendSelection,
    ChatMessage,
    EventType,
    QueryOptions,
    StreamEvent,
)
from opencode_orchestrator.errors import OrchestratorError, QueryCancelledError
from opencode_orchestrator.service import QueryService
from opencode_orchestrator.settings import (
    InMemorySettingsProvider,
    JsonSettingsProvider,
    LocalModelSettings,
    Settings,
)

__version__ = "0.1.0"

__all__ = [
    "Attachment",
    "BackendKind",
    "BackendSelection",
    "ChatMessage",
    "EventType",
    "InMemorySettingsProvider",
    "JsonSettingsProvider",
    "LocalModelSettings",
    "OrchestratorError",
    "QueryCancelledError",
    "QueryOptions",
    "QueryService",
    "Settings",
    "StreamEvent",
]
