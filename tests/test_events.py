from __future__ import annotations

from pathlib import Path

import allure

from coding_engines.events import CallbackSink, EventEmitter, RecordingSink
from coding_engines.models import (
    ChangesSummary,
    ChatMessage,
    EngineEvent,
    EventKind,
    ProcessConfig,
)

pytestmark = [
    allure.epic("Coding Engines"),
    allure.feature("Event Stream"),
]

SUMMARY = ChangesSummary(changes=(), summary="done")


def test_events_are_numbered_and_completed_is_last() -> None:
    sink = RecordingSink()
    emitter = EventEmitter([sink])

    emitter.log("one")
    emitter.chat(ChatMessage(role="assistant", content="hi"))
    emitter.changes(SUMMARY)
    assert emitter.complete(SUMMARY) is True
    emitter.log("late")

    assert [event.sequence for event in sink.events] == [1, 2, 3, 4]
    assert sink.events[-1].kind == EventKind.COMPLETED
    assert sink.of_kind(EventKind.LOG) == ["one"]
    assert emitter.terminal_reason == "completed"


def test_first_close_wins_and_blocks_further_events() -> None:
    sink = RecordingSink()
    emitter = EventEmitter([sink])

    assert emitter.close("timeout") is True
    assert emitter.close("cancelled") is False
    emitter.log("buffered")

    assert emitter.complete(SUMMARY) is False
    assert emitter.terminal_reason == "timeout"
    assert sink.events == []


def test_failing_sink_does_not_stop_delivery() -> None:
    class _Broken:
        def handle(self, event: EngineEvent) -> None:
            raise RuntimeError("sink down")

    sink = RecordingSink()
    emitter = EventEmitter([_Broken(), sink])

    emitter.log("still delivered")

    assert sink.of_kind(EventKind.LOG) == ["still delivered"]


def test_callback_sink_routes_by_kind(tmp_path: Path) -> None:
    logs: list[str] = []
    chats: list[ChatMessage] = []
    changes: list[ChangesSummary] = []
    config = ProcessConfig(
        model="m",
        cwd=tmp_path,
        on_log=logs.append,
        on_chat_message=chats.append,
        on_changes=changes.append,
    )
    emitter = EventEmitter([CallbackSink(config)])

    emitter.log("line")
    emitter.chat(ChatMessage(role="assistant", content="hello"))
    emitter.changes(SUMMARY)
    emitter.complete(SUMMARY)

    assert logs == ["line"]
    assert [chat.content for chat in chats] == ["hello"]
    assert changes == [SUMMARY]


def test_close_from_inside_a_sink_does_not_deadlock() -> None:
    sink = RecordingSink()
    emitter: EventEmitter

    class _Cancelling:
        def handle(self, event: EngineEvent) -> None:
            emitter.close("cancelled")

    emitter = EventEmitter([_Cancelling(), sink])
    emitter.log("trigger")
    emitter.log("dropped")

    assert sink.of_kind(EventKind.LOG) == ["trigger"]
    assert emitter.terminal_reason == "cancelled"
