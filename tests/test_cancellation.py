from __future__ import annotations

import threading

import allure

from coding_engines.cancellation import CancellationToken

pytestmark = [
    allure.epic("Coding Engines"),
    allure.feature("Cancellation"),
]


def test_cancel_sets_flag_and_runs_callbacks_once() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.on_cancelled(lambda: calls.append("a"))
    token.on_cancelled(lambda: calls.append("b"))

    assert not token.is_cancelled
    token.cancel()
    token.cancel()

    assert token.is_cancelled
    assert calls == ["a", "b"]


def test_callback_registered_after_cancel_runs_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []

    token.on_cancelled(lambda: calls.append(1))

    assert calls == [1]


def test_failing_callback_does_not_block_others() -> None:
    token = CancellationToken()
    calls: list[str] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    token.on_cancelled(_boom)
    token.on_cancelled(lambda: calls.append("after"))
    token.cancel()

    assert calls == ["after"]


def test_concurrent_cancel_invokes_callback_exactly_once() -> None:
    token = CancellationToken()
    calls: list[int] = []
    lock = threading.Lock()

    def _record() -> None:
        with lock:
            calls.append(1)

    token.on_cancelled(_record)
    threads = [threading.Thread(target=token.cancel) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert calls == [1]


def test_unregistered_callback_is_not_invoked() -> None:
    token = CancellationToken()
    calls: list[str] = []
    unregister = token.on_cancelled(lambda: calls.append("dropped"))
    token.on_cancelled(lambda: calls.append("kept"))

    unregister()
    unregister()
    token.cancel()

    assert calls == ["kept"]


def test_unregister_after_cancel_is_noop() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []

    unregister = token.on_cancelled(lambda: calls.append(1))
    unregister()

    assert calls == [1]
