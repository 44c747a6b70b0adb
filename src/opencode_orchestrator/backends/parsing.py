"""Decoders turning CLI and HTTP output into :class:`StreamEvent` sequences.

Two wire formats are understood:

* the CLI protocol, newline-delimited JSON objects discriminated by ``type``
  (``error``, ``reasoning``, ``text``, ``step_finish``);
* the HTTP chat-completion stream, ``data: <json>`` lines terminated by
  ``data: [DONE]``.

Malformed lines are logged and skipped; a single corrupt line never fails an
otherwise good response.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Final

from .base import StreamEvent


logger = logging.getLogger(__name__)

_SSE_PREFIX: Final[str] = "data:"
_SSE_DONE: Final[str] = "[DONE]"
_PREVIEW_CHARS: Final[int] = 200


@dataclass(frozen=True)
class ExtractionRule:
    """Reads a non-empty string found at ``path`` inside a decoded event."""

    name: str
    path: tuple[str, ...]

    def extract(self, event: Mapping[str, Any]) -> str | None:
        value: Any = event
        for key in self.path:
            if not isinstance(value, Mapping):
                return None
            value = value.get(key)
        if isinstance(value, str) and value:
            return value
        return None


# Evaluated in order; the first rule yielding text wins.
TEXT_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("part.text", ("part", "text")),
    ExtractionRule("text", ("text",)),
)
REASONING_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("part.text", ("part", "text")),
)
ERROR_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("error.message", ("error", "message")),
    ExtractionRule("error.data.message", ("error", "data", "message")),
    ExtractionRule("error", ("error",)),
    ExtractionRule("message", ("message",)),
)
# Only consulted by the buffered parse when no ``text`` event produced output.
FALLBACK_TEXT_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("text", ("text",)),
    ExtractionRule("content", ("content",)),
    ExtractionRule("message", ("message",)),
    ExtractionRule("part.text", ("part", "text")),
)
DELTA_TEXT_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("content", ("content",)),
)
DELTA_THINKING_RULES: Final[tuple[ExtractionRule, ...]] = (
    ExtractionRule("thinking", ("thinking",)),
    ExtractionRule("reasoning_content", ("reasoning_content",)),
)


def first_match(rules: Sequence[ExtractionRule], event: Mapping[str, Any]) -> str | None:
    for rule in rules:
        value = rule.extract(event)
        if value is not None:
            return value
    return None


class LineBuffer:
    """Accumulates chunks and releases complete lines only.

    Bytes are decoded incrementally so multi-byte characters split across
    chunk boundaries survive intact.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        tail = (self._pending + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._pending = ""
        return [tail] if tail else []


async def iter_lines(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def decode_line(line: str) -> Mapping[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError as exc:
        logger.debug(
            "Skipping undecodable output line",
            extra={"line_preview": stripped[:_PREVIEW_CHARS], "error": str(exc)},
        )
        return None
    if not isinstance(decoded, Mapping):
        logger.debug("Skipping non-object output line", extra={"line_preview": stripped[:_PREVIEW_CHARS]})
        return None
    return decoded


def error_message(event: Mapping[str, Any], default: str = "CLI error") -> str:
    message = first_match(ERROR_RULES, event)
    if message:
        return message
    error = event.get("error")
    if error:
        return json.dumps(error, default=str)
    return default


def ndjson_event(event: Mapping[str, Any]) -> StreamEvent | None:
    """Map one decoded CLI event to a stream event, or ``None`` to skip it."""

    kind = event.get("type")
    if kind == "error":
        return StreamEvent.failure(error_message(event))
    if kind == "reasoning":
        thinking = first_match(REASONING_RULES, event)
        return StreamEvent.thinking(thinking) if thinking else None
    if kind == "text":
        text = first_match(TEXT_RULES, event)
        return StreamEvent.text(text) if text else None
    if kind != "step_finish":
        logger.debug("Ignoring CLI event", extra={"event_type": kind})
    return None


async def parse_ndjson_stream(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Lazily decode CLI output lines, ending with exactly one terminal event."""

    async for line in lines:
        decoded = decode_line(line)
        if decoded is None:
            continue
        event = ndjson_event(decoded)
        if event is None:
            continue
        yield event
        if event.is_terminal:
            return
    yield StreamEvent.done()


@dataclass(frozen=True)
class ParsedOutput:
    """Aggregated result of parsing a complete CLI output."""

    text: str = ""
    thinking: str = ""
    error: str | None = None

    def events(self) -> list[StreamEvent]:
        if self.error is not None:
            return [StreamEvent.failure(self.error)]
        events: list[StreamEvent] = []
        if self.thinking:
            events.append(StreamEvent.thinking(self.thinking))
        if self.text:
            events.append(StreamEvent.text(self.text))
        events.append(StreamEvent.done())
        return events


def parse_cli_output(stdout: str) -> ParsedOutput:
    """Parse a buffered CLI output in one go.

    Falls back to the raw trimmed output when no structured line yields text,
    so an unexpected protocol still produces a usable answer.
    """

    text_parts: list[str] = []
    thinking_parts: list[str] = []
    fallback_text: str | None = None

    for line in stdout.splitlines():
        decoded = decode_line(line)
        if decoded is None:
            continue
        kind = decoded.get("type")
        if kind == "error":
            return ParsedOutput(error=error_message(decoded))
        if kind == "reasoning":
            thinking = first_match(REASONING_RULES, decoded)
            if thinking:
                thinking_parts.append(thinking)
        elif kind == "text":
            text = first_match(TEXT_RULES, decoded)
            if text:
                text_parts.append(text)
        elif fallback_text is None:
            fallback_text = first_match(FALLBACK_TEXT_RULES, decoded)

    text = "".join(text_parts) or fallback_text or ""
    if not text:
        logger.warning(
            "Could not extract text from CLI output; using raw output",
            extra={"output_preview": stdout[:_PREVIEW_CHARS]},
        )
        text = stdout.strip()
    return ParsedOutput(text=text, thinking="".join(thinking_parts))


def sse_events(line: str) -> tuple[StreamEvent, ...]:
    """Decode one ``data:`` line of a chat-completion stream."""

    if not line.startswith(_SSE_PREFIX):
        return ()
    data = line[len(_SSE_PREFIX):].strip()
    if data == _SSE_DONE:
        return (StreamEvent.done(),)
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable stream frame", extra={"line_preview": data[:_PREVIEW_CHARS]})
        return ()
    if not isinstance(payload, Mapping):
        return ()
    if payload.get("error"):
        return (StreamEvent.failure(error_message(payload, default="API error")),)

    try:
        delta = payload["choices"][0]["delta"]
    except (KeyError, IndexError, TypeError):
        return ()
    if not isinstance(delta, Mapping):
        return ()

    events: list[StreamEvent] = []
    thinking = first_match(DELTA_THINKING_RULES, delta)
    if thinking:
        events.append(StreamEvent.thinking(thinking))
    content = first_match(DELTA_TEXT_RULES, delta)
    if content:
        events.append(StreamEvent.text(content))
    return tuple(events)


async def parse_sse_stream(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[StreamEvent]:
    """Decode a chunked ``data:`` stream, buffering lines split across chunks."""

    async with aclosing(iter_lines(chunks)) as lines:
        async for line in lines:
            for event in sse_events(line):
                yield event
                if event.is_terminal:
                    return
    yield StreamEvent.done()


def completion_events(payload: Any) -> list[StreamEvent]:
    """Events for a non-streaming ``choices[0].message.content`` response."""

    if isinstance(payload, Mapping) and payload.get("error"):
        return [StreamEvent.failure(error_message(payload, default="API error"))]
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = ""
    events: list[StreamEvent] = []
    if isinstance(content, str) and content:
        events.append(StreamEvent.text(content))
    events.append(StreamEvent.done())
    return events


__all__ = [
    "ExtractionRule",
    "TEXT_RULES",
    "REASONING_RULES",
    "FALLBACK_TEXT_RULES",
    "LineBuffer",
    "ParsedOutput",
    "completion_events",
    "decode_line",
    "first_match",
    "iter_lines",
    "ndjson_event",
    "parse_cli_output",
    "parse_ndjson_stream",
    "parse_sse_stream",
    "sse_events",
]
