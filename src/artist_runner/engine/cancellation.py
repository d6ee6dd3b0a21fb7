"""Run-wide cancellation signal shared by every suspension point."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation flag with callback registration.

    Callbacks registered after cancellation run immediately in the
    registering thread. Callbacks must be quick; they run in whichever thread
    calls :meth:`cancel`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            _invoke(callback)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns an unregister function."""

        with self._lock:
            if not self._event.is_set():
                callback_id = self._next_id
                self._next_id += 1
                self._callbacks[callback_id] = callback

                def _unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(callback_id, None)

                return _unregister
        _invoke(callback)
        return lambda: None

    def wait(self, seconds: float | None = None) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""

        if seconds is not None and seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)


@contextmanager
def signal_handlers(token: CancellationToken) -> Iterator[None]:
    """Cancel ``token`` on SIGINT/SIGTERM while the block runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _request_cancel(name: str) -> None:
        logger.warning("Received %s, cancelling run", name)
        token.cancel(reason=name)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        # The interrupted main thread may hold the token or callback locks.
        threading.Thread(
            target=_request_cancel,
            args=(name,),
            name=f"cancel-{name}",
            daemon=True,
        ).start()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _invoke(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:  # noqa: BLE001
        logger.exception("Cancellation callback failed")
