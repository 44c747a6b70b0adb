"""Error taxonomy shared by the backends and the query facade.

Every error carries a machine-friendly ``code`` and a human readable
``message``.  The facade turns terminal errors into a single ``error`` stream
event, so the message is what end users eventually see.

``not_initialized``
    The facade was queried before backend discovery completed.

``backend_unavailable``
    No CLI executable was discovered and the HTTP fallback is disabled.

``process_error``
    A CLI invocation exited non-zero, failed to spawn or timed out.

``parse_error``
    A single output line could not be decoded.  Always recovered locally.

``transport_error``
    The HTTP endpoint answered with a non-2xx status or the network failed.

``cancelled``
    The request was stopped explicitly or superseded by a newer one.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestration failures."""

    code = "orchestrator_error"

    def __init__(self, message: str, *, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:  # pragma: no cover - trivial override
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class InitializationError(OrchestratorError):
    code = "not_initialized"

    def __init__(self, message: str = "OpenCode service not initialized", **kwargs: str | None) -> None:
        super().__init__(message, **kwargs)


class BackendUnavailableError(OrchestratorError):
    code = "backend_unavailable"


class ProcessError(OrchestratorError):
    """Raised when a CLI invocation does not complete successfully."""

    code = "process_error"

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        signal: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.exit_code = exit_code
        self.signal = signal
        self.stderr = stderr
        self.timed_out = timed_out


class ParseError(OrchestratorError):
    code = "parse_error"


class TransportError(OrchestratorError):
    code = "transport_error"

    def __init__(self, message: str, *, status_code: int | None = None, details: str | None = None) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class QueryCancelledError(OrchestratorError):
    code = "cancelled"

    def __init__(self, message: str = "Request cancelled", **kwargs: str | None) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "OrchestratorError",
    "InitializationError",
    "BackendUnavailableError",
    "ProcessError",
    "ParseError",
    "TransportError",
    "QueryCancelledError",
]
