"""Ordered event stream for engine calls, with a terminal latch.

Every call gets its own ``EventEmitter``. Events reach the sinks in emit
order, each numbered by a per-call sequence. Once the emitter is closed
(completion, timeout or cancellation) nothing else is delivered, even if
output was already buffered.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any, Protocol

from coding_engines.models import (
    ChangesSummary,
    ChatMessage,
    EngineEvent,
    EventKind,
    ProcessConfig,
)

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receiver of engine events."""

    def handle(self, event: EngineEvent) -> None:
        """Consume one event; called from the thread supervising the call."""


class CallbackSink:
    """Adapt ``on_log``/``on_chat_message``/``on_changes`` callbacks to a sink."""

    def __init__(self, config: ProcessConfig) -> None:
        self._config = config

    def handle(self, event: EngineEvent) -> None:
        if event.kind == EventKind.LOG and self._config.on_log is not None:
            self._config.on_log(event.payload)
        elif event.kind == EventKind.CHAT and self._config.on_chat_message is not None:
            self._config.on_chat_message(event.payload)
        elif event.kind == EventKind.CHANGES and self._config.on_changes is not None:
            self._config.on_changes(event.payload)


class RecordingSink:
    """Keep every event in memory; handy for callers that poll afterwards."""

    def __init__(self) -> None:
        self.events: list[EngineEvent] = []

    def handle(self, event: EngineEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[Any]:
        return [event.payload for event in self.events if event.kind == kind]


class EventEmitter:
    """Serialize delivery to sinks and enforce "no events after terminal"."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks = list(sinks)
        self._lock = threading.RLock()
        self._sequence = 0
        self._closed = False
        self._terminal: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_reason(self) -> str | None:
        return self._terminal

    def close(self, reason: str) -> bool:
        """Close the stream; only the first caller wins and gets ``True``."""

        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._terminal = reason
            return True

    def log(self, message: str) -> None:
        self._emit(EventKind.LOG, message)

    def chat(self, message: ChatMessage) -> None:
        self._emit(EventKind.CHAT, message)

    def changes(self, summary: ChangesSummary) -> None:
        self._emit(EventKind.CHANGES, summary)

    def complete(self, summary: ChangesSummary) -> bool:
        """Emit the final ``COMPLETED`` event and close, unless already closed."""

        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._terminal = "completed"
            self._sequence += 1
            event = EngineEvent(sequence=self._sequence, kind=EventKind.COMPLETED, payload=summary)
            self._deliver(event)
            return True

    def _emit(self, kind: EventKind, payload: Any) -> None:
        with self._lock:
            if self._closed:
                return
            self._sequence += 1
            self._deliver(EngineEvent(sequence=self._sequence, kind=kind, payload=payload))

    def _deliver(self, event: EngineEvent) -> None:
        for sink in self._sinks:
            try:
                sink.handle(event)
            except Exception:
                logger.exception("Event sink failed on %s event", event.kind.value)
