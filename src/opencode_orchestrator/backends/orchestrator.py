"""Ordered fallback across CLI invocation styles and the HTTP backend.

The chain is tried strictly in order: the three CLI styles (only when a CLI
executable was discovered and the selection is not local), then HTTP.  A
strategy is committed to as soon as it produces its first event; from then on
any failure is surfaced as a single terminal ``error`` event instead of moving
on, since partially delivered output cannot be replayed elsewhere.  A strategy
failing before its first event hands over to the next one after a short pause.
When every strategy fails, the *last* failure is raised.

Disabling the API fallback removes HTTP from the chain for gateway and
provider selections only.  A local-model selection keeps its HTTP strategy
and is not rejected as a configuration error: the local endpoint is the
primary backend there, not a fallback.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import Final

import anyio

from opencode_orchestrator.errors import BackendUnavailableError, OrchestratorError, QueryCancelledError
from opencode_orchestrator.telemetry import Status, StatusCode, get_meter, get_tracer

from .base import (
    AttemptOutcome,
    BackendKind,
    BackendSelection,
    ChatBackend,
    InvocationAttempt,
    RequestEnvelope,
    StreamEvent,
)
from .cancellation import CancellationToken
from .parsing import parse_cli_output, parse_ndjson_stream
from .process import InvocationStyle, ProcessRunner, cli_arguments


logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS: Final[float] = 0.1

_tracer = get_tracer(__name__)
_meter = get_meter(__name__)
_attempt_counter = _meter.create_counter(
    "orchestrator.attempts",
    description="Strategy attempts by outcome",
)
_attempt_duration = _meter.create_histogram(
    "orchestrator.attempt.duration",
    unit="s",
    description="Wall time spent in one strategy attempt",
)


@dataclass(frozen=True)
class Strategy:
    name: str
    style: InvocationStyle | None = None
    buffered: bool = False

    @property
    def is_http(self) -> bool:
        return self.style is None


CLI_STRATEGIES: Final[tuple[Strategy, ...]] = (
    Strategy("cli-direct", InvocationStyle.DIRECT),
    Strategy("cli-pipe", InvocationStyle.SHELL_PIPE),
    # Last-resort CLI style: collects the whole output before parsing.
    Strategy("cli-redirect", InvocationStyle.SHELL_REDIRECT, buffered=True),
)
HTTP_STRATEGY: Final[Strategy] = Strategy("http")


class FallbackOrchestrator:
    """Drives the fallback chain for one request at a time."""

    def __init__(
        self,
        runner: ProcessRunner | None,
        http_backend: ChatBackend,
        *,
        allow_http_fallback: bool = True,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self._runner = runner
        self._http = http_backend
        self._allow_http_fallback = allow_http_fallback
        self._retry_delay = retry_delay

    def strategies(self, selection: BackendSelection) -> tuple[Strategy, ...]:
        chain: list[Strategy] = []
        if self._runner is not None and selection.kind is BackendKind.CLI:
            chain.extend(CLI_STRATEGIES)
        # A local endpoint is the primary backend, never a fallback.
        if self._allow_http_fallback or selection.is_local:
            chain.append(HTTP_STRATEGY)
        return tuple(chain)

    async def query(
        self,
        selection: BackendSelection,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        strategies = self.strategies(selection)
        if not strategies:
            raise BackendUnavailableError(
                "API fallback is disabled but the OpenCode CLI is not available. "
                "Install the CLI or enable the API fallback."
            )

        last_error: Exception | None = None
        for index, strategy in enumerate(strategies):
            token.raise_if_cancelled()
            if index:
                logger.info("Falling back to next strategy", extra={"strategy": strategy.name})
                await self._pause(token)

            attempt = InvocationAttempt(strategy=strategy.name, started_at=time.time())
            span = _tracer.start_span(
                "orchestrator.attempt",
                attributes={"strategy": strategy.name, "model": selection.model, "attempt.index": index},
            )
            try:
                async with aclosing(self._events(strategy, selection, envelope, token)) as events:
                    async for event in events:
                        token.raise_if_cancelled()
                        attempt.events += 1
                        yield event
                        if event.is_terminal:
                            break
                attempt.outcome = AttemptOutcome.SUCCEEDED_WITH_EVENTS
                return
            except QueryCancelledError as exc:
                attempt.error = exc
                raise
            except (OrchestratorError, OSError) as exc:
                attempt.error = exc
                if attempt.events:
                    attempt.outcome = AttemptOutcome.FAILED_AFTER_EVENTS
                    yield StreamEvent.failure(_describe(exc))
                    return
                attempt.outcome = AttemptOutcome.FAILED_BEFORE_EVENTS
                last_error = exc
            finally:
                _finish(attempt, span)

        logger.error("All strategies failed", extra={"strategies": [item.name for item in strategies]})
        if last_error is None:
            raise BackendUnavailableError("No strategy ran for this request.")
        raise last_error

    async def _pause(self, token: CancellationToken) -> None:
        with token.scope():
            await anyio.sleep(self._retry_delay)
        token.raise_if_cancelled()

    async def _events(
        self,
        strategy: Strategy,
        selection: BackendSelection,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        if strategy.is_http:
            async with aclosing(self._http.stream(selection, envelope, token)) as events:
                async for event in events:
                    yield event
            return

        if self._runner is None or strategy.style is None:
            raise BackendUnavailableError(f"No CLI runner for strategy {strategy.name}.")
        invocation = self._runner.run(strategy.style, cli_arguments(envelope), envelope.cli_payload(), token=token)

        if strategy.buffered:
            output: list[str] = []
            async with aclosing(invocation.lines()) as lines:
                async for line in lines:
                    output.append(line)
            for event in parse_cli_output("\n".join(output)).events():
                yield event
            return

        async with aclosing(invocation.lines()) as lines, aclosing(parse_ndjson_stream(lines)) as events:
            async for event in events:
                yield event


def _describe(exc: BaseException) -> str:
    if isinstance(exc, OrchestratorError):
        return exc.message
    return str(exc) or type(exc).__name__


def _finish(attempt: InvocationAttempt, span) -> None:
    duration = time.time() - attempt.started_at
    outcome = attempt.outcome.value if attempt.outcome is not None else "cancelled"
    attributes = {"strategy": attempt.strategy, "outcome": outcome}
    _attempt_counter.add(1, attributes)
    _attempt_duration.record(duration, attributes)

    span.set_attribute("outcome", outcome)
    span.set_attribute("events", attempt.events)
    if attempt.error is not None:
        span.record_exception(attempt.error)
        span.set_status(Status(StatusCode.ERROR, _describe(attempt.error)))
    span.end()

    log = logger.info if attempt.error is None else logger.warning
    log(
        "Strategy attempt finished",
        extra={
            "strategy": attempt.strategy,
            "outcome": outcome,
            "events": attempt.events,
            "duration": round(duration, 3),
            "error": _describe(attempt.error) if attempt.error is not None else None,
        },
    )


__all__ = [
    "CLI_STRATEGIES",
    "FallbackOrchestrator",
    "HTTP_STRATEGY",
    "RETRY_DELAY_SECONDS",
    "Strategy",
]
