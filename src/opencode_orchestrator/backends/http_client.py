"""Chat-completion backend speaking the OpenAI compatible HTTP protocol."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import Final

import anyio
import httpx

from opencode_orchestrator.errors import TransportError

from .base import BackendSelection, RequestEnvelope, StreamEvent
from .cancellation import CancellationToken
from .parsing import completion_events, parse_sse_stream


logger = logging.getLogger(__name__)

ERROR_BODY_CHARS: Final[int] = 500


class HttpChatBackend:
    """Streams a chat completion from ``selection.endpoint``.

    No fixed timeout is applied; every await is bounded by the cancellation
    token instead.  A shared ``client`` may be injected (tests pass one built
    on ``httpx.MockTransport``); otherwise one is created per request.
    """

    name = "http"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def stream(
        self,
        selection: BackendSelection,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        token.raise_if_cancelled()
        if not selection.endpoint:
            raise TransportError("No HTTP endpoint configured for model", details=selection.model)

        client, cleanup = self._resolve_client()
        try:
            request = client.build_request(
                "POST",
                selection.endpoint,
                headers=_headers(selection),
                json=envelope.http_body(selection.api_model),
                timeout=None,
            )
            logger.info(
                "Sending chat completion request",
                extra={"url": selection.endpoint, "model": selection.model, "stream": envelope.stream},
            )
            response = await self._send(client, request, token)
            try:
                if response.is_error:
                    body = await self._read(response, token)
                    logger.warning(
                        "Chat completion endpoint returned an error",
                        extra={"status_code": response.status_code, "url": selection.endpoint},
                    )
                    raise TransportError(
                        f"API error: {response.status_code} - {body[:ERROR_BODY_CHARS]}",
                        status_code=response.status_code,
                    )

                if envelope.stream:
                    async with aclosing(parse_sse_stream(self._chunks(response, token))) as events:
                        async for event in events:
                            yield event
                    return

                body = await self._read(response, token)
                try:
                    payload = json.loads(body)
                except json.JSONDecodeError as exc:
                    raise TransportError(
                        f"Invalid JSON from chat completion endpoint: {exc}",
                        status_code=response.status_code,
                    ) from exc
                for event in completion_events(payload):
                    yield event
            finally:
                with anyio.CancelScope(shield=True):
                    await response.aclose()
        finally:
            with anyio.CancelScope(shield=True):
                await cleanup()

    def _resolve_client(self) -> tuple[httpx.AsyncClient, Callable[[], Awaitable[None]]]:
        if self._client is not None:
            async def _noop() -> None:
                await anyio.lowlevel.checkpoint()

            return self._client, _noop

        client = httpx.AsyncClient(timeout=None)

        async def _cleanup() -> None:
            await client.aclose()

        return client, _cleanup

    async def _send(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        token: CancellationToken,
    ) -> httpx.Response:
        with token.scope():
            try:
                return await client.send(request, stream=True)
            except httpx.HTTPError as exc:
                logger.warning("Chat completion request failed", extra={"error": str(exc)})
                raise TransportError(f"Network error: {exc}") from exc
        token.raise_if_cancelled()
        raise TransportError("Request interrupted")

    async def _read(self, response: httpx.Response, token: CancellationToken) -> str:
        with token.scope():
            try:
                await response.aread()
            except httpx.HTTPError as exc:
                raise TransportError(f"Network error: {exc}", status_code=response.status_code) from exc
            return response.text
        token.raise_if_cancelled()
        raise TransportError("Request interrupted")

    async def _chunks(self, response: httpx.Response, token: CancellationToken) -> AsyncIterator[str]:
        iterator = response.aiter_text()
        try:
            while True:
                with token.scope():
                    try:
                        chunk = await iterator.__anext__()
                    except StopAsyncIteration:
                        return
                    except httpx.HTTPError as exc:
                        raise TransportError(f"Stream interrupted: {exc}") from exc
                token.raise_if_cancelled()
                yield chunk
        finally:
            with anyio.CancelScope(shield=True):
                await iterator.aclose()


def _headers(selection: BackendSelection) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if selection.credentials:
        headers["Authorization"] = f"Bearer {selection.credentials}"
    return headers


__all__ = ["HttpChatBackend"]
