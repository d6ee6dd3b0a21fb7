"""Service + per-task worker lifecycle that resolves one outcome per attempt."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from artist_runner.engine.cancellation import CancellationToken
from artist_runner.engine.cleanup import EnvironmentCleanup
from artist_runner.engine.events import EventHub
from artist_runner.engine.models import LaunchSpec, ProcessRole, RunOutcome, Signal
from artist_runner.engine.process import (
    DEFAULT_KILL_TIMEOUT_SECONDS,
    ExitCallback,
    LaunchError,
    LineCallback,
    OutputLine,
    ProcessHandle,
)
from artist_runner.engine.sentinels import (
    DEFAULT_SERVICE_RULES,
    DEFAULT_WORKER_RULES,
    SentinelMatcher,
    SentinelRule,
)

logger = logging.getLogger(__name__)

SERVICE_NOT_READY = "service not ready"
EXPLICIT_FAILURE = "explicit failure signal"


class SupervisedProcess(Protocol):
    """The subset of :class:`ProcessHandle` the supervisor relies on."""

    @property
    def pid(self) -> int | None: ...

    @property
    def running(self) -> bool: ...

    def on_line(self, callback: LineCallback) -> None: ...

    def on_exit(self, callback: ExitCallback) -> None: ...

    def kill(self) -> None: ...


Launcher = Callable[[LaunchSpec, ProcessRole], SupervisedProcess]


class _Latch:
    """Single-resolution future; the first ``resolve`` wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value: object = None

    def resolve(self, value: object) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> object:
        self._event.wait(timeout=timeout)
        return self._value


class WorkerSupervisor:
    """Keeps the service alive across tasks and runs one worker per task.

    The service handle lives in a nullable slot owned by this object. It is
    torn down only when ``need_full_cleanup`` is set: by a service-down line,
    a service exit, a failed startup, or :meth:`request_full_cleanup`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        service_spec: LaunchSpec,
        worker_spec: LaunchSpec,
        events: EventHub | None = None,
        service_rules: tuple[SentinelRule, ...] = DEFAULT_SERVICE_RULES,
        worker_rules: tuple[SentinelRule, ...] = DEFAULT_WORKER_RULES,
        success_exit_code: int = 0,
        service_ready_timeout_seconds: float | None = None,
        cleanup: EnvironmentCleanup | None = None,
        kill_timeout_seconds: float = DEFAULT_KILL_TIMEOUT_SECONDS,
        launcher: Launcher | None = None,
    ) -> None:
        self.service_spec = service_spec
        self.worker_spec = worker_spec
        self.events = events or EventHub()
        self.service_matcher = SentinelMatcher(service_rules)
        self.worker_matcher = SentinelMatcher(worker_rules)
        self.success_exit_code = success_exit_code
        self.service_ready_timeout_seconds = service_ready_timeout_seconds
        self.cleanup = cleanup or EnvironmentCleanup()
        self.kill_timeout_seconds = kill_timeout_seconds
        self._launcher = launcher or self._launch_process
        self._lock = threading.Lock()
        self._service: SupervisedProcess | None = None
        self._service_ready = False
        self._worker: SupervisedProcess | None = None
        self._readiness: _Latch | None = None
        self._attempt: _Latch | None = None
        self._need_full_cleanup = False
        self._in_attempt = False

    @property
    def need_full_cleanup(self) -> bool:
        return self._need_full_cleanup

    @property
    def service_running(self) -> bool:
        service = self._service
        return service is not None and service.running

    def run_task(self, task_id: str, token: CancellationToken) -> RunOutcome:
        """Run one attempt for ``task_id``, already written to the handoff file.

        Returns ``Success``, ``Failure`` or ``Cancelled``. Only a fatal
        :class:`LaunchError` is raised. The worker is killed before return on
        every path.
        """

        if token.cancelled:
            return RunOutcome.cancelled()
        with self._lock:
            self._in_attempt = True
        try:
            outcome = self._attempt_task(task_id, token)
        finally:
            full_cleanup = self._finish_attempt()
        logger.info("Attempt for %s resolved: %s", task_id, outcome.describe())
        return outcome.with_full_cleanup(full_cleanup)

    def request_full_cleanup(self) -> None:
        """Ask for service teardown; done now unless an attempt is running."""

        with self._lock:
            self._need_full_cleanup = True
            busy = self._in_attempt
        if busy:
            return
        self._teardown_service()
        self.cleanup.run(full=True)
        with self._lock:
            self._need_full_cleanup = False

    def shutdown(self) -> None:
        """Kill everything this supervisor started."""

        worker, self._worker = self._worker, None
        if worker is not None:
            worker.kill()
        self._teardown_service()
        self.cleanup.run(full=True)
        with self._lock:
            self._need_full_cleanup = False

    # -- attempt phases --------------------------------------------------------

    def _attempt_task(self, task_id: str, token: CancellationToken) -> RunOutcome:
        if self._need_full_cleanup:
            self._teardown_service()
            with self._lock:
                self._need_full_cleanup = False

        not_ready = self._ensure_service(token)
        if not_ready is not None:
            return not_ready

        attempt = _Latch()
        with self._lock:
            self._attempt = attempt
        unregister = token.register(lambda: attempt.resolve(RunOutcome.cancelled()))
        try:
            if self._need_full_cleanup:
                return RunOutcome.failure("service down")
            try:
                worker = self._launcher(self.worker_spec, ProcessRole.WORKER)
            except LaunchError as error:
                if error.fatal:
                    raise
                self.events.status(f"Worker launch failed: {error}")
                return RunOutcome.failure(f"worker launch failed: {error}")
            self._worker = worker
            self.events.status(f"Worker process started (PID: {worker.pid}) for {task_id}.")
            worker.on_line(lambda line: self._on_worker_line(attempt, line))
            worker.on_exit(lambda code: self._on_worker_exit(attempt, code))
            outcome = attempt.wait()
            if not isinstance(outcome, RunOutcome):
                raise RuntimeError("Attempt latch resolved without an outcome.")
            return outcome
        finally:
            unregister()
            with self._lock:
                self._attempt = None

    def _ensure_service(self, token: CancellationToken) -> RunOutcome | None:
        service = self._service
        if service is not None and service.running and self._service_ready:
            return None
        if service is not None:
            self._teardown_service()

        readiness = _Latch()
        with self._lock:
            self._readiness = readiness
        try:
            try:
                service = self._launcher(self.service_spec, ProcessRole.SERVICE)
            except LaunchError as error:
                if error.fatal:
                    raise
                with self._lock:
                    self._need_full_cleanup = True
                self.events.status(f"Service launch failed: {error}")
                return RunOutcome.failure(SERVICE_NOT_READY)
            with self._lock:
                self._service = service
                self._service_ready = False
            self.events.status(f"Service process started (PID: {service.pid}).")
            service.on_line(lambda line: self._on_service_line(service, line))
            service.on_exit(lambda code: self._on_service_exit(service, code))

            unregister = token.register(lambda: readiness.resolve(None))
            try:
                ready = readiness.wait(timeout=self.service_ready_timeout_seconds)
            finally:
                unregister()
        finally:
            with self._lock:
                self._readiness = None

        if ready is True:
            with self._lock:
                self._service_ready = True
            self.events.status("Service is ready.")
            return None

        with self._lock:
            self._need_full_cleanup = True
        if ready is None and token.cancelled:
            return RunOutcome.cancelled()
        if ready is None:
            self.events.status(
                f"Service not ready after {self.service_ready_timeout_seconds}s.",
            )
        else:
            self.events.status("Service reported down before becoming ready.")
        return RunOutcome.failure(SERVICE_NOT_READY)

    def _finish_attempt(self) -> bool:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.kill()
        full = self._need_full_cleanup
        if full:
            self._teardown_service()
        self.cleanup.run(full=full)
        with self._lock:
            self._need_full_cleanup = False
            self._in_attempt = False
        return full

    def _teardown_service(self) -> None:
        with self._lock:
            service, self._service = self._service, None
            self._service_ready = False
        if service is None:
            return
        self.events.status(f"Stopping service process (PID: {service.pid}).")
        service.kill()

    def _launch_process(self, spec: LaunchSpec, role: ProcessRole) -> SupervisedProcess:
        return ProcessHandle.launch(
            spec,
            role=role,
            kill_timeout_seconds=self.kill_timeout_seconds,
        )

    # -- output callbacks (delivery threads) -------------------------------------

    def _on_worker_line(self, attempt: _Latch, line: OutputLine) -> None:
        self.events.log_line(ProcessRole.WORKER, line.text, stream=line.stream)
        signal = self.worker_matcher.classify(line.text)
        if signal == Signal.TASK_SUCCESS:
            attempt.resolve(RunOutcome.success())
        elif signal == Signal.TASK_FAILURE:
            attempt.resolve(RunOutcome.failure(EXPLICIT_FAILURE))

    def _on_worker_exit(self, attempt: _Latch, code: int) -> None:
        if code == self.success_exit_code:
            outcome = RunOutcome.success()
        else:
            outcome = RunOutcome.failure(f"unexpected exit, code={code}")
        if attempt.resolve(outcome):
            logger.debug("Worker exited with %s before any outcome signal", code)

    def _on_service_line(self, service: SupervisedProcess, line: OutputLine) -> None:
        self.events.log_line(ProcessRole.SERVICE, line.text, stream=line.stream)
        signal = self.service_matcher.classify(line.text)
        if signal == Signal.SERVICE_READY:
            with self._lock:
                readiness = self._readiness if service is self._service else None
            if readiness is not None:
                readiness.resolve(True)
        elif signal == Signal.SERVICE_DOWN:
            self._service_lost(service, "service down")

    def _on_service_exit(self, service: SupervisedProcess, code: int) -> None:
        self._service_lost(service, f"service exited, code={code}")

    def _service_lost(self, service: SupervisedProcess, reason: str) -> None:
        with self._lock:
            if service is not self._service:
                return
            self._need_full_cleanup = True
            readiness = self._readiness
            attempt = self._attempt
        self.events.status(f"Service lost: {reason}.")
        if readiness is not None:
            readiness.resolve(False)
        if attempt is not None:
            attempt.resolve(RunOutcome.failure(reason))
