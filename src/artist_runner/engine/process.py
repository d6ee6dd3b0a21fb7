"""One supervised external process with streamed output and tree kill."""

from __future__ import annotations

import errno
import logging
import os
import queue
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import IO

import psutil

from artist_runner.engine.cancellation import CancellationToken
from artist_runner.engine.models import LaunchSpec, OutputStream, ProcessRole

logger = logging.getLogger(__name__)

_RESOURCE_EXHAUSTION_ERRNOS = frozenset(
    {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE},
)
DEFAULT_KILL_TIMEOUT_SECONDS = 5.0
DEFAULT_DRAIN_GRACE_SECONDS = 2.0


@dataclass(slots=True, frozen=True)
class OutputLine:
    """One completed line of process output."""

    text: str
    stream: OutputStream


LineCallback = Callable[[OutputLine], None]
ExitCallback = Callable[[int], None]


@dataclass(slots=True, frozen=True)
class _StreamClosed:
    stream: OutputStream


@dataclass(slots=True, frozen=True)
class _Exited:
    returncode: int


@dataclass(slots=True, frozen=True)
class _AddLineCallback:
    callback: LineCallback


@dataclass(slots=True, frozen=True)
class _AddExitCallback:
    callback: ExitCallback


_QueueItem = OutputLine | _StreamClosed | _Exited | _AddLineCallback | _AddExitCallback


class LaunchError(RuntimeError):
    """Process could not be started.

    ``fatal`` marks environment problems that retrying cannot fix: a missing
    or unusable executable or working directory, and OS resource exhaustion.
    """

    def __init__(self, message: str, *, fatal: bool) -> None:
        super().__init__(message)
        self.fatal = fatal


class ProcessHandle:
    """Owns one running process.

    Two reader threads only enqueue lines; a separate delivery thread invokes
    callbacks, so a slow callback never blocks the child's pipes. The exit
    notification travels through the same queue, after every line read
    before the exit was observed. Callback registrations are queued too, so
    buffered lines and a late exit are replayed on the delivery thread in
    their original order. Once the process has exited and both pipes have
    closed the delivery thread stops; a later registration starts a new one.
    """

    def __init__(
        self,
        spec: LaunchSpec,
        *,
        role: ProcessRole,
        kill_timeout_seconds: float = DEFAULT_KILL_TIMEOUT_SECONDS,
        drain_grace_seconds: float = DEFAULT_DRAIN_GRACE_SECONDS,
    ) -> None:
        self.spec = spec
        self.role = role
        self.kill_timeout_seconds = kill_timeout_seconds
        self.drain_grace_seconds = drain_grace_seconds
        self._process: subprocess.Popen[str] | None = None
        self._queue: queue.Queue[_QueueItem] = queue.Queue()
        self._delivery_lock = threading.Lock()
        self._delivering = False
        self._exit_seen = False
        self._line_callbacks: list[LineCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._undelivered: list[OutputLine] = []
        self._delivered_exit: int | None = None
        self._exited = threading.Event()
        self._drained = threading.Event()
        self._exit_waiters: list[threading.Event] = []
        self._waiters_lock = threading.Lock()
        self._kill_lock = threading.Lock()
        self._group_swept = False
        self._open_streams = 0

    @classmethod
    def launch(
        cls,
        spec: LaunchSpec,
        *,
        role: ProcessRole,
        kill_timeout_seconds: float = DEFAULT_KILL_TIMEOUT_SECONDS,
    ) -> ProcessHandle:
        """Start ``spec`` and return its handle."""

        handle = cls(spec, role=role, kill_timeout_seconds=kill_timeout_seconds)
        handle.start()
        return handle

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._exited.is_set() and self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    def start(self) -> None:
        if self._process is not None:
            raise RuntimeError(f"{self.role.value} process already started")
        cwd = self.spec.working_directory
        if cwd is not None and not cwd.is_dir():
            raise LaunchError(
                f"{self.role.value} working directory not found: {cwd}",
                fatal=True,
            )
        env = None
        if self.spec.env is not None:
            env = os.environ.copy()
            env.update(self.spec.env)
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.spec.argv(),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if self.spec.capture_stdout else subprocess.DEVNULL,
                stderr=subprocess.PIPE if self.spec.capture_stderr else subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **_new_group_kwargs(),
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as error:
            raise LaunchError(
                f"{self.role.value} command cannot be started: {self.spec.program} ({error})",
                fatal=True,
            ) from error
        except OSError as error:
            raise LaunchError(
                f"{self.role.value} process failed to start: {error}",
                fatal=error.errno in _RESOURCE_EXHAUSTION_ERRNOS,
            ) from error

        logger.info(
            "Started %s process (PID: %s): %s",
            self.role.value,
            self._process.pid,
            self.spec.display(),
        )
        streams = [
            (self._process.stdout, OutputStream.STDOUT),
            (self._process.stderr, OutputStream.STDERR),
        ]
        for pipe, stream in streams:
            if pipe is None:
                continue
            self._open_streams += 1
            self._spawn(self._read_stream, pipe, stream, name=f"{self.role.value}-{stream.value}")
        if self._open_streams == 0:
            self._drained.set()
        self._enqueue(None)
        self._spawn(self._watch_exit, name=f"{self.role.value}-exit")

    def on_line(self, callback: LineCallback) -> None:
        """Register a line callback; buffered lines are replayed to the first one."""

        self._enqueue(_AddLineCallback(callback))

    def on_exit(self, callback: ExitCallback) -> None:
        """Register an exit callback; fires once even if exit was already delivered."""

        self._enqueue(_AddExitCallback(callback))

    def wait_for_exit(
        self,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> int | None:
        """Block until exit, ``timeout`` or cancellation; never kills."""

        if self._process is None:
            raise RuntimeError(f"{self.role.value} process was never started")
        wake = threading.Event()
        with self._waiters_lock:
            if self._exited.is_set():
                return self._process.returncode
            self._exit_waiters.append(wake)
        unregister = token.register(wake.set) if token is not None else None
        try:
            wake.wait(timeout=timeout)
        finally:
            if unregister is not None:
                unregister()
            with self._waiters_lock:
                if wake in self._exit_waiters:
                    self._exit_waiters.remove(wake)
        return self._process.returncode if self._exited.is_set() else None

    def kill(self) -> None:
        """Kill the process and all of its descendants. Idempotent."""

        with self._kill_lock:
            process = self._process
            if process is None:
                return
            if process.poll() is not None:
                # Leader is gone but descendants may still hold its group and pipes.
                # Sweep once; the reaped pid may be reused later.
                if not self._group_swept:
                    self._group_swept = True
                    _kill_process_group(process.pid)
                return
            try:
                parent = psutil.Process(process.pid)
                victims = [*parent.children(recursive=True), parent]
            except psutil.NoSuchProcess:
                self._group_swept = True
                _kill_process_group(process.pid)
                return
            logger.info(
                "Terminating %s process tree for PID: %s (%d processes)",
                self.role.value,
                process.pid,
                len(victims),
            )
            for victim in victims:
                try:
                    victim.kill()
                except psutil.NoSuchProcess:
                    continue
                except psutil.AccessDenied:
                    logger.warning("Access denied killing PID %s", victim.pid)
            _kill_process_group(process.pid)
            self._group_swept = True
            _, alive = psutil.wait_procs(victims, timeout=self.kill_timeout_seconds)
            for survivor in alive:
                logger.warning("PID %s survived kill of %s tree", survivor.pid, self.role.value)
            try:
                process.wait(timeout=self.kill_timeout_seconds)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "%s process %s did not exit after kill",
                    self.role.value,
                    process.pid,
                )

    # -- background threads ----------------------------------------------------

    def _spawn(self, target: Callable[..., None], *args: object, name: str) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()

    def _read_stream(self, pipe: IO[str], stream: OutputStream) -> None:
        try:
            for raw in iter(pipe.readline, ""):
                self._queue.put(OutputLine(text=raw.rstrip("\r\n"), stream=stream))
        except (OSError, ValueError):
            logger.debug("%s %s pipe closed abruptly", self.role.value, stream.value)
        finally:
            self._queue.put(_StreamClosed(stream=stream))

    def _watch_exit(self) -> None:
        if self._process is None:
            return
        returncode = self._process.wait()
        self._drained.wait(timeout=self.drain_grace_seconds)
        with self._waiters_lock:
            self._exited.set()
            waiters = list(self._exit_waiters)
        for waiter in waiters:
            waiter.set()
        self._queue.put(_Exited(returncode=returncode))

    def _enqueue(self, item: _QueueItem | None) -> None:
        with self._delivery_lock:
            if item is not None:
                self._queue.put(item)
            if self._delivering:
                return
            self._delivering = True
        self._spawn(self._deliver, name=f"{self.role.value}-delivery")

    def _deliver(self) -> None:
        while True:
            with self._delivery_lock:
                if self._exit_seen and self._open_streams == 0 and self._queue.empty():
                    self._delivering = False
                    return
            self._handle(self._queue.get())

    def _handle(self, item: _QueueItem) -> None:
        if isinstance(item, _StreamClosed):
            self._open_streams -= 1
            if self._open_streams == 0:
                self._drained.set()
        elif isinstance(item, _Exited):
            self._exit_seen = True
            self._delivered_exit = item.returncode
            for callback in list(self._exit_callbacks):
                self._call_exit(callback, item.returncode)
        elif isinstance(item, _AddLineCallback):
            self._line_callbacks.append(item.callback)
            pending, self._undelivered = self._undelivered, []
            for line in pending:
                self._call_line(item.callback, line)
        elif isinstance(item, _AddExitCallback):
            self._exit_callbacks.append(item.callback)
            if self._delivered_exit is not None:
                self._call_exit(item.callback, self._delivered_exit)
        elif not self._line_callbacks:
            self._undelivered.append(item)
        else:
            for callback in list(self._line_callbacks):
                self._call_line(callback, item)

    def _call_line(self, callback: LineCallback, line: OutputLine) -> None:
        try:
            callback(line)
        except Exception:  # noqa: BLE001
            logger.exception("%s line callback failed", self.role.value)

    def _call_exit(self, callback: ExitCallback, returncode: int) -> None:
        try:
            callback(returncode)
        except Exception:  # noqa: BLE001
            logger.exception("%s exit callback failed", self.role.value)


def _new_group_kwargs() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_process_group(pgid: int) -> None:
    if os.name == "nt":
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        logger.warning("Access denied killing process group %s", pgid)
