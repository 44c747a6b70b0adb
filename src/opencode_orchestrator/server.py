"""HTTP surface over :class:`~opencode_orchestrator.service.QueryService`."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from contextlib import aclosing, asynccontextmanager
from dataclasses import asdict
from time import perf_counter
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .backends.base import Attachment, ChatMessage, EventType, QueryOptions
from .service import QueryService
from .settings import JsonSettingsProvider, Settings, settings_path_from_env


logger = logging.getLogger(__name__)


class _InvalidRequest(ValueError):
    pass


def _invalid(details: str) -> JSONResponse:
    logger.warning("Rejected request", extra={"details": details})
    return JSONResponse(
        {"error": "invalid_request", "details": details},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


async def _json_object(request: Request) -> Mapping[str, Any]:
    if "application/json" not in request.headers.get("content-type", "").lower():
        raise _InvalidRequest("Request must be JSON.")
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise _InvalidRequest("Request must be JSON.") from exc
    if not isinstance(payload, Mapping):
        raise _InvalidRequest("Request body must be a JSON object.")
    return payload


def _optional(payload: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) and kind is not bool:
        raise _InvalidRequest(f"Field '{key}' has an invalid type.")
    if not isinstance(value, kind):
        raise _InvalidRequest(f"Field '{key}' has an invalid type.")
    return value


def _attachments(items: Any) -> tuple[Attachment, ...]:
    if items is None:
        return ()
    if not isinstance(items, list):
        raise _InvalidRequest("Field 'attachments' must be a list.")
    attachments = []
    for item in items:
        if not isinstance(item, Mapping) or not isinstance(item.get("mime_type"), str):
            raise _InvalidRequest("Each attachment needs a 'mime_type'.")
        attachments.append(
            Attachment(
                mime_type=item["mime_type"],
                data=item.get("data") or "",
                file_name=item.get("file_name"),
                file_path=item.get("file_path"),
            )
        )
    return tuple(attachments)


def _history(items: Any) -> tuple[ChatMessage, ...]:
    if items is None:
        return ()
    if not isinstance(items, list):
        raise _InvalidRequest("Field 'history' must be a list.")
    history = []
    for item in items:
        if not isinstance(item, Mapping) or item.get("role") not in {"system", "user", "assistant"}:
            raise _InvalidRequest("History entries need a role of system, user or assistant.")
        history.append(
            ChatMessage(
                role=item["role"],
                content=str(item.get("content") or ""),
                attachments=_attachments(item.get("attachments")),
            )
        )
    return tuple(history)


def parse_query(payload: Mapping[str, Any]) -> tuple[str, QueryOptions]:
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise _InvalidRequest("Field 'prompt' must be a non-empty string.")
    tools = payload.get("tools") or []
    if not isinstance(tools, list) or not all(isinstance(tool, str) for tool in tools):
        raise _InvalidRequest("Field 'tools' must be a list of strings.")
    stream = _optional(payload, "stream", bool)
    options = QueryOptions(
        model=_optional(payload, "model", str),
        temperature=_optional(payload, "temperature", (int, float)),
        max_tokens=_optional(payload, "max_tokens", int),
        system_prompt=_optional(payload, "system_prompt", str),
        conversation_history=_history(payload.get("history")),
        attachments=_attachments(payload.get("attachments")),
        tools=tuple(tools),
        stream=True if stream is None else stream,
        thinking=bool(_optional(payload, "thinking", bool)),
    )
    return prompt, options


def create_app(service: QueryService | None = None) -> FastAPI:
    """Build the app.  Without ``service`` the settings file named by
    ``OPENCODE_SETTINGS_PATH`` backs the facade so model switches persist.
    """

    settings_file: JsonSettingsProvider | None = None
    if service is None:
        settings_file = JsonSettingsProvider(settings_path_from_env(), Settings.from_env())
        service = QueryService(settings_file)
    query_service = service

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings_file is not None:
            await settings_file.reload()
        await query_service.initialize()
        yield
        query_service.stop()

    app = FastAPI(title="opencode-orchestrator", lifespan=lifespan)
    app.state.service = query_service

    @app.get("/health")
    async def health_check() -> JSONResponse:
        ready = query_service.is_ready()
        payload: dict[str, Any] = {"status": "healthy", "ready": ready}
        if ready:
            payload.update(
                model=query_service.active_model(),
                provider=query_service.active_provider_id(),
                cli_available=query_service.executable is not None,
                valid_config=query_service.has_valid_config(),
            )
        return JSONResponse(payload)

    @app.get("/models")
    async def list_models() -> JSONResponse:
        return JSONResponse(
            {
                "active": query_service.active_model(),
                "models": [asdict(model) for model in query_service.available_models()],
            }
        )

    @app.post("/query")
    async def run_query(request: Request) -> Response:
        try:
            prompt, options = parse_query(await _json_object(request))
        except _InvalidRequest as exc:
            return _invalid(str(exc))

        start = perf_counter()
        logger.info("Starting query", extra={"prompt_preview": prompt[:80], "model": options.model})

        async def _event_stream() -> AsyncGenerator[str, None]:
            outcome = "done"
            async with aclosing(query_service.query(prompt, options)) as events:
                async for event in events:
                    if event.type is EventType.ERROR:
                        outcome = "cancelled" if event.cancelled else "error"
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            logger.info(
                "Query finished",
                extra={"outcome": outcome, "duration": round(perf_counter() - start, 3)},
            )

        return StreamingResponse(_event_stream(), media_type="text/event-stream")

    @app.post("/stop")
    async def stop_query() -> JSONResponse:
        query_service.stop()
        return JSONResponse({"status": "stopped"})

    @app.post("/model")
    async def switch_model(request: Request) -> JSONResponse:
        try:
            payload = await _json_object(request)
        except _InvalidRequest as exc:
            return _invalid(str(exc))
        model_id = payload.get("model")
        if not isinstance(model_id, str) or not model_id.strip():
            return _invalid("Field 'model' must be a non-empty string.")
        selection = await query_service.switch_model(model_id.strip())
        return JSONResponse(
            {"model": selection.model, "provider": selection.provider, "backend": selection.kind.value}
        )

    return app


__all__ = ["create_app", "parse_query"]
