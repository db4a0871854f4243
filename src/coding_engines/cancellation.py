"""Cooperative cancellation shared between a caller and in-flight engine calls."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from functools import partial

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-way cancellation flag with at-most-once callbacks.

    ``cancel()`` may be called from any thread and any number of times. Each
    registered callback runs exactly once: at cancellation time, or right away
    when it is registered on an already cancelled token.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            _invoke(callback)

    def on_cancelled(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; the returned function unregisters it."""

        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return partial(self._remove, callback)
        _invoke(callback)
        return _noop

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


def _noop() -> None:
    return None


def _invoke(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Cancellation callback failed")
