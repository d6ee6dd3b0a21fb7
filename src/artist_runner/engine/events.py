"""Structured event stream for observers (UI, log sinks)."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from artist_runner.engine.models import (
    LogEvent,
    OutputStream,
    ProcessRole,
    Severity,
    StatusEvent,
)
from artist_runner.engine.sentinels import classify_severity
from artist_runner.storage.common import utc_now

logger = logging.getLogger(__name__)

EventListener = Callable[[LogEvent | StatusEvent], None]

_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.OTHER: logging.INFO,
}


class EventHub:
    """Fan-out of log and status events.

    Delivery is fire-and-forget: a failing listener is logged and skipped,
    never propagated to the process or session that emitted the event.
    """

    def __init__(self, listeners: tuple[EventListener, ...] = ()) -> None:
        self._lock = threading.Lock()
        self._listeners: list[EventListener] = list(listeners)
        self._output_loggers = {
            role: logging.getLogger(f"artist_runner.output.{role.value}") for role in ProcessRole
        }

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def log_line(
        self,
        source: ProcessRole,
        text: str,
        *,
        stream: OutputStream = OutputStream.STDOUT,
    ) -> LogEvent:
        """Tag and publish one process output line."""

        event = LogEvent(
            source=source,
            severity=classify_severity(text),
            text=text,
            timestamp=utc_now(),
            stream=stream,
        )
        self._output_loggers[source].log(_LOG_LEVELS[event.severity], "%s", text)
        self._dispatch(event)
        return event

    def status(self, text: str) -> StatusEvent:
        event = StatusEvent(text=text, timestamp=utc_now())
        logger.info("%s", text)
        self._dispatch(event)
        return event

    def _dispatch(self, event: LogEvent | StatusEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.warning("Event listener %r failed", listener, exc_info=True)
