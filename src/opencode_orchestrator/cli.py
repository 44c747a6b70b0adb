from __future__ import annotations

import argparse
import json
import os
import sys
import textwrap
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import anyio
import requests
from dotenv import load_dotenv

from opencode_orchestrator.backends.base import EventType, QueryOptions
from opencode_orchestrator.logging_config import configure_logging
from opencode_orchestrator.service import QueryService
from opencode_orchestrator.settings import DEFAULT_SETTINGS_PATH, JsonSettingsProvider

_ACCENT_DEFAULT = "cyan"
_RESET = "\033[0m"
_COLOUR_CODES: Mapping[str, str] = {
    "cyan": "\033[38;5;45m",
    "violet": "\033[38;5;177m",
    "green": "\033[38;5;48m",
    "amber": "\033[38;5;214m",
    "red": "\033[38;5;203m",
    "grey": "\033[38;5;245m",
}


@dataclass(slots=True)
class _CLIContext:
    accent: str
    settings_path: Path


def _colourise(text: str, style: str) -> str:
    colour = _COLOUR_CODES.get(style, _COLOUR_CODES.get("cyan", ""))
    reset = _RESET if colour else ""
    return f"{colour}{text}{reset}"


def _panel(title: str, body: str, style: str = "cyan") -> str:
    raw_lines: list[str] = []
    for line in body.splitlines() or [""]:
        if not line.strip():
            raw_lines.append("")
            continue
        raw_lines.extend(textwrap.wrap(line, width=72) or [""])

    content_width = max([len(title), *(len(line) for line in raw_lines)])
    border = "=" * (content_width + 4)
    title_line = f"= {title.center(content_width)} ="
    body_lines = [f"| {line.ljust(content_width)} |" for line in (raw_lines or [""])]
    panel_lines = [border, title_line, border, *body_lines, border]
    return "\n".join(_colourise(line, style) for line in panel_lines)


def _print_panel(title: str, body: str, style: str = "cyan") -> None:
    print(_panel(title, body, style))


async def _build_service(ctx: _CLIContext) -> QueryService:
    provider = await JsonSettingsProvider.load(ctx.settings_path)
    service = QueryService(provider)
    await service.initialize()
    return service


async def _ask(args: argparse.Namespace, ctx: _CLIContext) -> int:
    service = await _build_service(ctx)
    options = QueryOptions(
        model=args.model,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        system_prompt=args.system,
        thinking=args.thinking,
    )

    wrote_text = False
    async with aclosing(service.query(args.prompt_text, options)) as events:
        async for event in events:
            if event.type is EventType.TEXT:
                sys.stdout.write(event.content)
                sys.stdout.flush()
                wrote_text = True
            elif event.type is EventType.THINKING and args.thinking:
                sys.stderr.write(_colourise(event.content, "grey"))
                sys.stderr.flush()
            elif event.type is EventType.ERROR:
                if wrote_text:
                    print()
                style = "amber" if event.cancelled else "red"
                _print_panel("Query", event.error or "Unknown error", style)
                return 1
    if wrote_text:
        print()
    return 0


def _ask_command(args: argparse.Namespace, ctx: _CLIContext) -> int:
    try:
        return anyio.run(_ask, args, ctx)
    except KeyboardInterrupt:
        _print_panel("Query", "Interrupted by user", "amber")
        return 130


def _models_command(args: argparse.Namespace, ctx: _CLIContext) -> int:
    service = anyio.run(_build_service, ctx)
    active = service.active_model()
    lines = []
    for model in service.available_models():
        marker = "*" if model.id == active else " "
        tag = " (free)" if model.is_free else ""
        lines.append(f"{marker} {model.id}{tag}")
    _print_panel("Models", "\n".join(lines) or "No models available.", ctx.accent)
    return 0


async def _switch_model(args: argparse.Namespace, ctx: _CLIContext) -> str:
    service = await _build_service(ctx)
    selection = await service.switch_model(args.model_id)
    return f"Model: {selection.model}\nProvider: {selection.provider}\nBackend: {selection.kind.value}"


def _switch_model_command(args: argparse.Namespace, ctx: _CLIContext) -> int:
    summary = anyio.run(_switch_model, args, ctx)
    _print_panel("Model switched", f"{summary}\nSaved to {ctx.settings_path}", "green")
    return 0


def _run_with_uvicorn(options: Mapping[str, object]) -> None:
    import uvicorn

    uvicorn.run("opencode_orchestrator.server:create_app", factory=True, **options)


def _serve_command(args: argparse.Namespace, ctx: _CLIContext) -> int:
    options: dict[str, object] = {
        "host": args.host,
        "port": args.port,
        "reload": args.reload,
        "log_config": None,
    }
    # The app factory runs inside uvicorn and reads its settings file from here.
    os.environ["OPENCODE_SETTINGS_PATH"] = str(ctx.settings_path)
    _print_panel("Server", f"Serving on {args.host}:{args.port}", ctx.accent)
    try:
        _run_with_uvicorn(options)
    except KeyboardInterrupt:
        _print_panel("Server", "Interrupted by user", "amber")
    return 0


def _health_command(args: argparse.Namespace, ctx: _CLIContext) -> int:
    url = args.server_url.rstrip("/") + "/health"
    try:
        response = requests.get(url, timeout=10)
    except requests.RequestException as exc:
        _print_panel("Health", f"Health check failed: {exc}", "red")
        return 1

    status_style = "green" if response.status_code == requests.codes.ok else "amber"
    try:
        data = response.json()
    except json.JSONDecodeError:
        body = f"HTTP {response.status_code}\nStatus: {response.text or 'unknown'}"
    else:
        body = f"HTTP {response.status_code}\nStatus: {data.get('status', 'unknown')}"
        if data.get("model"):
            body += f"\nModel: {data['model']}"
        if "ready" in data:
            body += f"\nReady: {'yes' if data['ready'] else 'no'}"

    _print_panel("Health", body, status_style)
    return 0 if response.status_code == requests.codes.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Query coding agents through the OpenCode CLI or HTTP APIs.")
    parser.add_argument(
        "--accent",
        default=_ACCENT_DEFAULT,
        choices=sorted(_COLOUR_CODES.keys()),
        help="Accent colour for decorated output.",
    )
    parser.add_argument(
        "--settings",
        default=os.environ.get("OPENCODE_SETTINGS_PATH", str(DEFAULT_SETTINGS_PATH)),
        help="Path of the JSON settings file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "WARNING"),
        help="Log level for diagnostic output on stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ask_parser = subparsers.add_parser("ask", help="Run a query and stream the answer.")
    ask_parser.add_argument("prompt_text", help="Prompt to send.")
    ask_parser.add_argument("--model", "-m", default=None, help="Model override, e.g. opencode/big-pickle.")
    ask_parser.add_argument("--temperature", type=float, default=None, help="Sampling temperature.")
    ask_parser.add_argument("--max-tokens", type=int, default=None, help="Maximum tokens for the answer.")
    ask_parser.add_argument("--system", default=None, help="System prompt.")
    ask_parser.add_argument("--thinking", action="store_true", help="Request and display reasoning output.")
    ask_parser.set_defaults(handler=_ask_command)

    models_parser = subparsers.add_parser("models", help="List the models available to this installation.")
    models_parser.set_defaults(handler=_models_command)

    switch_parser = subparsers.add_parser("switch-model", help="Persist a new default model.")
    switch_parser.add_argument("model_id", help="Model identifier in provider/model form.")
    switch_parser.set_defaults(handler=_switch_model_command)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service.")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host interface for the HTTP server.")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for the HTTP server.")
    serve_parser.add_argument("--reload", action="store_true", help="Restart the server when code changes.")
    serve_parser.set_defaults(handler=_serve_command)

    health_parser = subparsers.add_parser("health", help="Check the health endpoint and display status.")
    health_parser.add_argument(
        "--server-url",
        default="http://localhost:8000",
        help="Base URL of the running orchestrator service.",
    )
    health_parser.set_defaults(handler=_health_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    context = _CLIContext(accent=args.accent, settings_path=Path(args.settings).expanduser())
    handler: Callable[[argparse.Namespace, _CLIContext], int] | None = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args, context)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
