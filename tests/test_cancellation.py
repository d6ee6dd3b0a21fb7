from __future__ import annotations

import os
import signal
import threading
import time

import allure
import pytest

from artist_runner.engine.cancellation import CancellationToken, signal_handlers

pytestmark = [
    allure.epic("Session Control"),
    allure.feature("Cancellation"),
]


def test_callbacks_run_once_on_cancel() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.register(lambda: calls.append("first"))
    unregister = token.register(lambda: calls.append("removed"))
    unregister()

    token.cancel(reason="stop")
    token.cancel(reason="again")

    assert calls == ["first"]
    assert token.reason == "stop"


def test_register_after_cancel_runs_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []

    token.register(lambda: calls.append(1))

    assert calls == [1]


def test_failing_callback_does_not_block_others() -> None:
    token = CancellationToken()
    calls: list[int] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    token.register(_boom)
    token.register(lambda: calls.append(1))
    token.cancel()

    assert calls == [1]


def test_wait_is_cut_short_by_cancel() -> None:
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()

    started = time.monotonic()
    assert token.wait(30) is True
    assert time.monotonic() - started < 10


def test_wait_without_cancel_returns_false() -> None:
    assert CancellationToken().wait(0.01) is False
    assert CancellationToken().wait(0) is False


@pytest.mark.skipif(os.name == "nt", reason="POSIX signals only")
def test_sigterm_cancels_token_inside_handler_block() -> None:
    token = CancellationToken()
    original = signal.getsignal(signal.SIGTERM)

    with signal_handlers(token):
        os.kill(os.getpid(), signal.SIGTERM)
        assert token.wait(5) is True

    assert token.reason == "SIGTERM"
    assert signal.getsignal(signal.SIGTERM) == original


@pytest.mark.skipif(os.name == "nt", reason="POSIX signals only")
def test_sigterm_while_token_lock_is_held_does_not_deadlock() -> None:
    token = CancellationToken()
    sender = threading.Timer(0.1, os.kill, args=(os.getpid(), signal.SIGTERM))

    with signal_handlers(token):
        with token._lock:
            sender.start()
            time.sleep(0.5)
            assert not token.cancelled
        assert token.wait(5) is True

    sender.join()
    assert token.reason == "SIGTERM"
