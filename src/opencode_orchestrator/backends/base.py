"""Core value types exchanged between the facade, the orchestrator and backends.

Everything in this module is immutable once built.  A request flows through the
system as a :class:`BackendSelection` (which backend and model to use) plus a
:class:`RequestEnvelope` (what to send), and comes back as a sequence of
:class:`StreamEvent` values regardless of whether a CLI subprocess or an HTTP
endpoint served it.
"""

from __future__ import annotations

import enum
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .cancellation import CancellationToken


class EventType(str, enum.Enum):
    TEXT = "text"
    THINKING = "thinking"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    """A single unit of the uniform output stream."""

    type: EventType
    content: str = ""
    error: str | None = None
    cancelled: bool = False

    @classmethod
    def text(cls, content: str) -> StreamEvent:
        return cls(EventType.TEXT, content=content)

    @classmethod
    def thinking(cls, content: str) -> StreamEvent:
        return cls(EventType.THINKING, content=content)

    @classmethod
    def failure(cls, message: str, *, cancelled: bool = False) -> StreamEvent:
        return cls(EventType.ERROR, error=message, cancelled=cancelled)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(EventType.DONE)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.ERROR, EventType.DONE)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.type in (EventType.TEXT, EventType.THINKING):
            payload["content"] = self.content
        if self.type is EventType.ERROR:
            payload["error"] = self.error
            payload["cancelled"] = self.cancelled
        return payload


class BackendKind(str, enum.Enum):
    CLI = "cli"
    HTTP_PROVIDER = "http-provider"
    HTTP_LOCAL = "http-local"


@dataclass(frozen=True)
class BackendSelection:
    """Backend and model parameters resolved once per request.

    ``kind`` names the primary backend.  ``endpoint`` and ``credentials`` are
    populated for every kind so that the HTTP strategy can be attempted as a
    fallback after the CLI strategies.
    """

    kind: BackendKind
    model: str
    provider: str
    temperature: float = 0.7
    max_tokens: int | None = None
    credentials: str | None = field(default=None, repr=False)
    endpoint: str | None = None

    @property
    def api_model(self) -> str:
        """Model identifier without its provider prefix."""

        _, sep, name = self.model.partition("/")
        return name if sep else self.model

    @property
    def is_local(self) -> bool:
        return self.kind is BackendKind.HTTP_LOCAL


@dataclass(frozen=True)
class Attachment:
    """A file attached to a prompt, either persisted on disk or inlined as base64."""

    mime_type: str
    data: str = ""
    file_name: str | None = None
    file_path: str | None = None


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str
    attachments: Sequence[Attachment] = ()


@dataclass(frozen=True)
class QueryOptions:
    """Per-call options accepted by the query facade."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None
    conversation_history: Sequence[ChatMessage] = ()
    attachments: Sequence[Attachment] = ()
    tools: Sequence[str] = ()
    stream: bool = True
    thinking: bool = False


@dataclass(frozen=True)
class Message:
    role: str
    content: str | tuple[Mapping[str, Any], ...]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [dict(part) for part in self.content]}


@dataclass(frozen=True)
class RequestEnvelope:
    """Fully assembled request, shared by every strategy of one call."""

    messages: tuple[Message, ...]
    model: str
    temperature: float = 0.7
    max_tokens: int | None = None
    stream: bool = True
    tools: tuple[str, ...] = ()
    thinking: bool = False

    @property
    def tools_enabled(self) -> bool:
        return bool(self.tools)

    def cli_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": [message.to_dict() for message in self.messages],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if self.tools:
            payload["tools"] = list(self.tools)
        return payload

    def http_body(self, api_model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": api_model,
            "messages": [message.to_dict() for message in self.messages],
            "stream": self.stream,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        if self.thinking and "claude" in self.model:
            body["thinking"] = {"type": "enabled", "budget_tokens": 16000}
        return body


class AttemptOutcome(str, enum.Enum):
    SUCCEEDED_WITH_EVENTS = "succeeded-with-events"
    FAILED_BEFORE_EVENTS = "failed-before-events"
    FAILED_AFTER_EVENTS = "failed-after-events"


@dataclass
class InvocationAttempt:
    """Transient record of one fallback strategy execution."""

    strategy: str
    started_at: float
    outcome: AttemptOutcome | None = None
    error: Exception | None = None
    events: int = 0


@runtime_checkable
class ChatBackend(Protocol):
    """Protocol satisfied by the HTTP chat-completion backend."""

    name: str

    def stream(
        self,
        selection: BackendSelection,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events for ``envelope``, ending with a terminal event."""


__all__ = [
    "EventType",
    "StreamEvent",
    "BackendKind",
    "BackendSelection",
    "Attachment",
    "ChatMessage",
    "QueryOptions",
    "Message",
    "RequestEnvelope",
    "AttemptOutcome",
    "InvocationAttempt",
    "ChatBackend",
]
