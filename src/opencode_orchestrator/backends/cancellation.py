"""Cooperative cancellation shared between the facade and the active backend."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import anyio

from opencode_orchestrator.errors import QueryCancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """Signal owned by one facade call and handed by reference to backends.

    Backends wrap every suspension point in :meth:`scope` so that
    :meth:`cancel` interrupts the await in flight, and register
    :meth:`on_cancel` callbacks for resources that must be torn down
    immediately (for example a live subprocess).  Scopes never span a
    ``yield``; between awaits backends call :meth:`raise_if_cancelled`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._scopes: set[anyio.CancelScope] = set()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks must not block cancellation
                logger.exception("Cancellation callback failed")
        for scope in list(self._scopes):
            scope.cancel()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""

        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    @contextmanager
    def scope(self, *, deadline: float = math.inf) -> Iterator[anyio.CancelScope]:
        """Cancel scope interrupted by :meth:`cancel` or by ``deadline``."""

        cancel_scope = anyio.CancelScope(deadline=deadline)
        if self._cancelled:
            cancel_scope.cancel()
        self._scopes.add(cancel_scope)
        try:
            with cancel_scope:
                yield cancel_scope
        finally:
            self._scopes.discard(cancel_scope)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise QueryCancelledError()


__all__ = ["CancellationToken"]
