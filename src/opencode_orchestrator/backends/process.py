"""Subprocess invocation of the OpenCode CLI.

One parameterised runner serves every invocation style.  The styles differ
only in how the request payload, always written to a temporary file first,
reaches the process:

``direct``
    the file contents are written to the child's stdin pipe;
``pipe``
    a shell pipeline (``cat``/``type``) feeds the file into the child;
``redirect``
    shell input redirection feeds the file into the child.

Stdout is released line by line as soon as each newline arrives.  Stderr is
spooled to an anonymous temporary file and only read when the process fails.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import secrets
import shlex
import signal
import subprocess
import tempfile
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from typing import IO, Any, Final, NoReturn

import anyio
from anyio.abc import Process

from opencode_orchestrator.errors import ProcessError

from .base import RequestEnvelope
from .cancellation import CancellationToken
from .parsing import LineBuffer


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_TEMPERATURE: Final[float] = 0.7
STDERR_EXCERPT_CHARS: Final[int] = 500
REQUEST_FILE_PREFIX: Final[str] = "opencode-request-"
_CLEANUP_BACKOFF_SECONDS: Final[tuple[float, ...]] = (0.05, 0.1, 0.25)
_KILL_GRACE_SECONDS: Final[float] = 2.0
_WINDOWS: Final[bool] = os.name == "nt"
_STDIN_ERRORS: Final[tuple[type[BaseException], ...]] = (
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    BrokenPipeError,
    ConnectionResetError,
)


class InvocationStyle(str, enum.Enum):
    DIRECT = "direct"
    SHELL_PIPE = "pipe"
    SHELL_REDIRECT = "redirect"


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int | None
    stderr: str = ""
    timed_out: bool = False

    @property
    def signal(self) -> int | None:
        if self.exit_code is not None and self.exit_code < 0:
            return -self.exit_code
        return None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def cli_arguments(envelope: RequestEnvelope) -> list[str]:
    args = ["run", "--format", "json", "-m", envelope.model]
    if envelope.temperature != DEFAULT_TEMPERATURE:
        args.extend(["--temperature", str(envelope.temperature)])
    if envelope.max_tokens:
        args.extend(["--max-tokens", str(envelope.max_tokens)])
    if envelope.thinking:
        args.append("--thinking")
    return args


def _quote(parts: Sequence[str]) -> str:
    if _WINDOWS:
        return subprocess.list2cmdline(list(parts))
    return shlex.join(parts)


def build_command(
    style: InvocationStyle,
    executable: str,
    args: Sequence[str],
    request_file: str,
) -> str | list[str]:
    """Exec list for ``direct``; a shell command line for the other styles."""

    argv = [executable, *args]
    if style is InvocationStyle.DIRECT:
        return argv
    command = _quote(argv)
    source = _quote([request_file])
    if style is InvocationStyle.SHELL_PIPE:
        reader = "type" if _WINDOWS else "cat"
        return f"{reader} {source} | {command}"
    return f"{command} < {source}"


def _unique_suffix() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


async def write_request_file(payload: Mapping[str, Any], temp_dir: str | None = None) -> anyio.Path:
    directory = anyio.Path(temp_dir) if temp_dir else anyio.Path(tempfile.gettempdir())
    await directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{REQUEST_FILE_PREFIX}{_unique_suffix()}.json"
    await path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.debug("Wrote request file", extra={"path": str(path)})
    return path


async def _cleanup_sleep(attempt: int) -> None:
    backoff_index = min(attempt - 1, len(_CLEANUP_BACKOFF_SECONDS) - 1)
    await anyio.sleep(_CLEANUP_BACKOFF_SECONDS[backoff_index])


async def remove_request_file(path: anyio.Path) -> None:
    """Delete ``path``, retrying with backoff, then rename it out of the way.

    Never raises; failures are only logged.
    """

    last_error: OSError | None = None
    for attempt in range(1, len(_CLEANUP_BACKOFF_SECONDS) + 1):
        try:
            await path.unlink(missing_ok=True)
            return
        except OSError as exc:
            last_error = exc
            logger.debug(
                "Request file removal failed",
                extra={"path": str(path), "attempt": attempt, "error": str(exc)},
            )
            await _cleanup_sleep(attempt)

    renamed = path.with_name(f"{path.name}.{_unique_suffix()}.deleted")
    try:
        await path.rename(renamed)
    except OSError as exc:
        logger.warning(
            "Could not remove request file",
            extra={"path": str(path), "error": str(exc), "unlink_error": str(last_error)},
        )
        return
    logger.warning(
        "Could not remove request file; renamed it",
        extra={"path": str(path), "renamed_to": str(renamed), "error": str(last_error)},
    )


def _send_signal(process: Process, *, force: bool = False) -> None:
    if process.returncode is not None:
        return
    try:
        if _WINDOWS:
            process.terminate()
        else:
            # The child leads its own session; signal the whole group so shell
            # pipelines take the CLI down with them.
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        pass


def _read_spooled(handle: IO[bytes]) -> str:
    handle.seek(0)
    return handle.read().decode("utf-8", errors="replace")


class ProcessInvocation:
    """A single run of the CLI.

    :meth:`lines` spawns the process, yields its stdout lines, and raises
    :class:`ProcessError` once the output is exhausted if the process failed.
    ``outcome`` is populated when the process has been reaped.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        style: InvocationStyle,
        args: Sequence[str],
        payload: Mapping[str, Any],
        token: CancellationToken,
    ) -> None:
        self.style = style
        self.outcome: ProcessOutcome | None = None
        self._runner = runner
        self._args = list(args)
        self._payload = payload
        self._token = token

    async def lines(self) -> AsyncIterator[str]:
        self._token.raise_if_cancelled()
        request_file = await write_request_file(self._payload, self._runner.temp_dir)
        try:
            stderr_file = await anyio.to_thread.run_sync(tempfile.TemporaryFile)
            try:
                process = await self._spawn(request_file, stderr_file)
                unregister = self._token.on_cancel(lambda: _send_signal(process))
                try:
                    deadline = anyio.current_time() + self._runner.timeout
                    if self.style is InvocationStyle.DIRECT:
                        await self._feed_stdin(process, request_file, deadline)

                    buffer = LineBuffer()
                    while True:
                        chunk = await self._receive(process, deadline)
                        if chunk is None:
                            break
                        for line in buffer.feed(chunk):
                            self._token.raise_if_cancelled()
                            yield line
                    for line in buffer.flush():
                        yield line

                    exit_code = await self._wait(process, deadline)
                    if exit_code != 0:
                        stderr = await anyio.to_thread.run_sync(_read_spooled, stderr_file)
                        self.outcome = ProcessOutcome(exit_code=exit_code, stderr=stderr)
                        raise ProcessError(
                            f"CLI exited with code {exit_code}. Stderr: {stderr[:STDERR_EXCERPT_CHARS]}",
                            exit_code=exit_code,
                            signal=self.outcome.signal,
                            stderr=stderr[:STDERR_EXCERPT_CHARS],
                        )
                    self.outcome = ProcessOutcome(exit_code=0)
                finally:
                    unregister()
                    with anyio.CancelScope(shield=True):
                        await self._reap(process)
            finally:
                await anyio.to_thread.run_sync(stderr_file.close)
        finally:
            with anyio.CancelScope(shield=True):
                await remove_request_file(request_file)

    async def _spawn(self, request_file: anyio.Path, stderr_file: IO[bytes]) -> Process:
        command = build_command(self.style, self._runner.executable, self._args, str(request_file))
        stdin = subprocess.PIPE if self.style is InvocationStyle.DIRECT else subprocess.DEVNULL
        logger.info(
            "Starting CLI process",
            extra={"style": self.style.value, "executable": self._runner.executable},
        )
        try:
            return await anyio.open_process(
                command,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
                start_new_session=not _WINDOWS,
            )
        except OSError as exc:
            self.outcome = ProcessOutcome(exit_code=None, stderr=str(exc))
            raise ProcessError(f"Failed to start CLI: {exc}", details=self.style.value) from exc

    async def _feed_stdin(self, process: Process, request_file: anyio.Path, deadline: float) -> None:
        data = await request_file.read_bytes()
        if process.stdin is None:
            raise ProcessError("CLI stdin is not a pipe", details=self.style.value)
        with self._token.scope(deadline=deadline):
            try:
                await process.stdin.send(data)
                await process.stdin.aclose()
            except _STDIN_ERRORS:
                # The child exited without reading; its exit status reports why.
                logger.debug("CLI closed stdin early", extra={"style": self.style.value})
            return
        self._interrupted(process)

    async def _receive(self, process: Process, deadline: float) -> bytes | None:
        if process.stdout is None:
            raise ProcessError("CLI stdout is not a pipe", details=self.style.value)
        with self._token.scope(deadline=deadline):
            try:
                return await process.stdout.receive()
            except (anyio.EndOfStream, anyio.ClosedResourceError):
                return None
        self._interrupted(process)

    async def _wait(self, process: Process, deadline: float) -> int:
        with self._token.scope(deadline=deadline):
            return await process.wait()
        self._interrupted(process)

    def _interrupted(self, process: Process) -> NoReturn:
        """Called after a token scope swallowed a cancellation; always raises."""

        self._token.raise_if_cancelled()
        _send_signal(process)
        self.outcome = ProcessOutcome(exit_code=process.returncode, timed_out=True)
        logger.warning(
            "CLI process timed out",
            extra={"style": self.style.value, "timeout": self._runner.timeout},
        )
        raise ProcessError(
            f"CLI timed out after {self._runner.timeout:g} seconds",
            exit_code=process.returncode,
            timed_out=True,
        )

    async def _reap(self, process: Process) -> None:
        if process.returncode is None:
            _send_signal(process)
            with anyio.move_on_after(self._runner.kill_grace):
                await process.wait()
        if process.returncode is None:
            _send_signal(process, force=True)
            await process.wait()
        await process.aclose()


class ProcessRunner:
    """Runs the CLI at ``executable`` with a per-invocation timeout in seconds."""

    def __init__(
        self,
        executable: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        temp_dir: str | None = None,
        kill_grace: float = _KILL_GRACE_SECONDS,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.temp_dir = temp_dir
        self.kill_grace = kill_grace

    def run(
        self,
        style: InvocationStyle,
        args: Sequence[str],
        payload: Mapping[str, Any],
        *,
        token: CancellationToken | None = None,
    ) -> ProcessInvocation:
        return ProcessInvocation(self, style, args, payload, token or CancellationToken())


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "InvocationStyle",
    "ProcessInvocation",
    "ProcessOutcome",
    "ProcessRunner",
    "build_command",
    "cli_arguments",
    "remove_request_file",
    "write_request_file",
]
