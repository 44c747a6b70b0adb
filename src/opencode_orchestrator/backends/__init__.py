"""Backend exports."""

from opencode_orchestrator.backends.base import BackendKind, BackendSelection, RequestEnvelope, StreamEvent
from opencode_orchestrator.backends.cancellation import CancellationToken
from opencode_orchestrator.backends.envelope import build_envelope
from opencode_orchestrator.backends.http_client import HttpChatBackend
from opencode_orchestrator.backends.orchestrator import FallbackOrchestrator
from opencode_orchestrator.backends.process import InvocationStyle, ProcessRunner
from opencode_orchestrator.backends.resolver import resolve_backend

__all__ = [
    "BackendKind",
    "BackendSelection",
    "CancellationToken",
    "FallbackOrchestrator",
    "HttpChatBackend",
    "InvocationStyle",
    "ProcessRunner",
    "RequestEnvelope",
    "StreamEvent",
    "build_envelope",
    "resolve_backend",
]
