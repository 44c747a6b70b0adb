from __future__ import annotations

import json
from collections.abc import AsyncIterator

import pytest

from opencode_orchestrator.backends.base import EventType, StreamEvent
from opencode_orchestrator.backends.parsing import (
    LineBuffer,
    completion_events,
    iter_lines,
    ndjson_event,
    parse_cli_output,
    parse_ndjson_stream,
    parse_sse_stream,
    sse_events,
)


async def _aiter(items: list) -> AsyncIterator:
    for item in items:
        yield item


async def _collect(stream: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    return [event async for event in stream]


def _line(payload: dict) -> str:
    return json.dumps(payload)


def test_ndjson_text_prefers_part_text() -> None:
    event = ndjson_event({"type": "text", "part": {"text": "from part"}, "text": "top level"})

    assert event == StreamEvent.text("from part")


def test_ndjson_text_falls_back_to_top_level_text() -> None:
    assert ndjson_event({"type": "text", "text": "hello"}) == StreamEvent.text("hello")


def test_ndjson_reasoning_becomes_thinking() -> None:
    event = ndjson_event({"type": "reasoning", "part": {"text": "let me see"}})

    assert event == StreamEvent.thinking("let me see")


def test_ndjson_error_message_lookup_order() -> None:
    nested = ndjson_event({"type": "error", "error": {"data": {"message": "nested"}}})
    direct = ndjson_event({"type": "error", "error": {"message": "direct", "data": {"message": "nested"}}})
    plain = ndjson_event({"type": "error", "error": "plain string"})
    fallback = ndjson_event({"type": "error"})

    assert nested.error == "nested"
    assert direct.error == "direct"
    assert plain.error == "plain string"
    assert fallback.error == "CLI error"


def test_ndjson_ignores_step_finish_and_unknown_types() -> None:
    assert ndjson_event({"type": "step_finish"}) is None
    assert ndjson_event({"type": "tool_use", "text": "ignored"}) is None
    assert ndjson_event({"type": "text", "part": {"text": ""}}) is None


@pytest.mark.anyio
async def test_parse_ndjson_stream_skips_malformed_lines() -> None:
    lines = [
        _line({"type": "reasoning", "part": {"text": "think"}}),
        "{not json",
        "",
        "[1, 2, 3]",
        _line({"type": "text", "part": {"text": "Hello"}}),
        _line({"type": "step_finish"}),
        _line({"type": "text", "part": {"text": " world"}}),
    ]

    events = await _collect(parse_ndjson_stream(_aiter(lines)))

    assert events == [
        StreamEvent.thinking("think"),
        StreamEvent.text("Hello"),
        StreamEvent.text(" world"),
        StreamEvent.done(),
    ]


@pytest.mark.anyio
async def test_parse_ndjson_stream_stops_at_error() -> None:
    lines = [
        _line({"type": "text", "text": "partial"}),
        _line({"type": "error", "error": {"message": "rate limited"}}),
        _line({"type": "text", "text": "never seen"}),
    ]

    events = await _collect(parse_ndjson_stream(_aiter(lines)))

    assert events == [StreamEvent.text("partial"), StreamEvent.failure("rate limited")]


@pytest.mark.anyio
async def test_parse_ndjson_stream_empty_output_is_done() -> None:
    assert await _collect(parse_ndjson_stream(_aiter([]))) == [StreamEvent.done()]


def test_parse_cli_output_concatenates_text_and_thinking() -> None:
    stdout = "\n".join(
        [
            _line({"type": "reasoning", "part": {"text": "a"}}),
            _line({"type": "text", "part": {"text": "Hel"}}),
            _line({"type": "reasoning", "part": {"text": "b"}}),
            _line({"type": "text", "part": {"text": "lo"}}),
        ]
    )

    parsed = parse_cli_output(stdout)

    assert parsed.text == "Hello"
    assert parsed.thinking == "ab"
    assert parsed.events() == [StreamEvent.thinking("ab"), StreamEvent.text("Hello"), StreamEvent.done()]


def test_parse_cli_output_uses_generic_fields_without_text_events() -> None:
    parsed = parse_cli_output(_line({"type": "result", "content": "generic answer"}))

    assert parsed.text == "generic answer"


def test_parse_cli_output_falls_back_to_raw_output() -> None:
    parsed = parse_cli_output("  plain text answer\n")

    assert parsed.text == "plain text answer"


def test_parse_cli_output_error_wins() -> None:
    stdout = "\n".join(
        [
            _line({"type": "text", "text": "ignored"}),
            _line({"type": "error", "message": "bad model"}),
        ]
    )

    assert parse_cli_output(stdout).events() == [StreamEvent.failure("bad model")]


def test_line_buffer_keeps_partial_lines_and_split_characters() -> None:
    buffer = LineBuffer()
    encoded = "héllo\nwörld".encode()
    split = encoded.index("ö".encode()) + 1

    assert buffer.feed(encoded[:3]) == []
    assert buffer.feed(encoded[3:split]) == ["héllo"]
    assert buffer.feed(encoded[split:]) == []
    assert buffer.flush() == ["wörld"]
    assert buffer.flush() == []


def test_line_buffer_strips_carriage_returns() -> None:
    buffer = LineBuffer()

    assert buffer.feed("one\r\ntwo\r\n") == ["one", "two"]


def test_sse_events_reads_thinking_before_content() -> None:
    line = "data: " + json.dumps({"choices": [{"delta": {"reasoning_content": "hmm", "content": "Hi"}}]})

    assert sse_events(line) == (StreamEvent.thinking("hmm"), StreamEvent.text("Hi"))


def test_sse_events_done_and_noise() -> None:
    assert sse_events("data: [DONE]") == (StreamEvent.done(),)
    assert sse_events(": keep-alive") == ()
    assert sse_events("data: {broken") == ()
    assert sse_events("data: " + json.dumps({"choices": []})) == ()


def test_sse_events_error_payload_is_terminal() -> None:
    (event,) = sse_events("data: " + json.dumps({"error": {"message": "quota exceeded"}}))

    assert event.type is EventType.ERROR
    assert event.error == "quota exceeded"


@pytest.mark.anyio
async def test_parse_sse_stream_reassembles_split_frames() -> None:
    frame = "data: " + json.dumps({"choices": [{"delta": {"content": "Hello"}}]}) + "\n\n"
    chunks = [frame[:10], frame[10:25], frame[25:] + "data: [DO", "NE]\n\ndata: ignored\n"]

    events = await _collect(parse_sse_stream(_aiter(chunks)))

    assert events == [StreamEvent.text("Hello"), StreamEvent.done()]


@pytest.mark.anyio
async def test_parse_sse_stream_without_done_marker_still_terminates() -> None:
    frame = "data: " + json.dumps({"choices": [{"delta": {"content": "x"}}]})

    events = await _collect(parse_sse_stream(_aiter([frame])))

    assert events == [StreamEvent.text("x"), StreamEvent.done()]


def test_completion_events() -> None:
    payload = {"choices": [{"message": {"content": "answer"}}]}

    assert completion_events(payload) == [StreamEvent.text("answer"), StreamEvent.done()]
    assert completion_events({"choices": []}) == [StreamEvent.done()]
    assert completion_events({"error": {"message": "nope"}}) == [StreamEvent.failure("nope")]


@pytest.mark.anyio
async def test_ndjson_output_ends_with_synthesized_done() -> None:
    stdout = '{"type":"text","part":{"text":"Hi"}}\n{"type":"text","part":{"text":" there"}}\n'

    events = await _collect(parse_ndjson_stream(iter_lines(_aiter([stdout]))))

    assert events == [StreamEvent.text("Hi"), StreamEvent.text(" there"), StreamEvent.done()]


@pytest.mark.anyio
async def test_sse_body_with_done_marker() -> None:
    body = 'data: {"choices":[{"delta":{"content":"A"}}]}\ndata: [DONE]\n'

    events = await _collect(parse_sse_stream(_aiter([body])))

    assert events == [StreamEvent.text("A"), StreamEvent.done()]
