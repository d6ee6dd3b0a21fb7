"""Domain models for backlog supervision and process outcomes."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_WORKER_SUBDIR = "AppleMusicDecrypt"
HANDOFF_FILE_NAME = "artists.txt"
SOURCE_DB_NAME = "artistNames.db"
PROGRESS_DB_NAME = "process_artists.db"
METADATA_DB_NAME = "am_metadata.sqlite"


class ProcessRole(str, Enum):
    """Which of the two cooperating processes produced something."""

    SERVICE = "service"
    WORKER = "worker"


class OutputStream(str, Enum):
    """Origin stream of one output line."""

    STDOUT = "stdout"
    STDERR = "stderr"


class Signal(str, Enum):
    """Control signals recognised in process output."""

    SERVICE_READY = "service_ready"
    SERVICE_DOWN = "service_down"
    TASK_SUCCESS = "task_success"
    TASK_FAILURE = "task_failure"


class Severity(str, Enum):
    """Observer-facing severity tag of an output line."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    OTHER = "OTHER"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class SessionPhase(str, Enum):
    """States of the session state machine."""

    LOADING_BACKLOG = "loading_backlog"
    PROCESSING_ITEM = "processing_item"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DRAINING = "draining"
    TERMINAL = "terminal"


class TerminalStatus(str, Enum):
    """Final status of a whole run."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class RunOutcome:
    """Result of exactly one task attempt."""

    kind: OutcomeKind
    reason: str | None = None
    full_cleanup: bool = False

    @classmethod
    def success(cls) -> RunOutcome:
        return cls(kind=OutcomeKind.SUCCESS)

    @classmethod
    def failure(cls, reason: str) -> RunOutcome:
        return cls(kind=OutcomeKind.FAILURE, reason=reason)

    @classmethod
    def cancelled(cls) -> RunOutcome:
        return cls(kind=OutcomeKind.CANCELLED)

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def failed(self) -> bool:
        return self.kind == OutcomeKind.FAILURE

    @property
    def was_cancelled(self) -> bool:
        return self.kind == OutcomeKind.CANCELLED

    def with_full_cleanup(self, full_cleanup: bool) -> RunOutcome:
        return RunOutcome(kind=self.kind, reason=self.reason, full_cleanup=full_cleanup)

    def describe(self) -> str:
        if self.reason:
            return f"{self.kind.value} ({self.reason})"
        return self.kind.value


@dataclass(slots=True)
class SessionState:
    """Mutable state of one pass over a backlog snapshot."""

    cumulative_units_processed: int = 0
    budget_cap: int | None = None
    need_full_cleanup: bool = False
    session_failed: bool = False
    stop_reason: str | None = None

    @property
    def budget_exceeded(self) -> bool:
        if not self.budget_cap:
            return False
        return self.cumulative_units_processed > self.budget_cap

    def fail(self, reason: str) -> None:
        self.session_failed = True
        self.stop_reason = reason


@dataclass(slots=True, frozen=True)
class TaskMetrics:
    """Informational enrichment for one task."""

    display_name: str
    unit_count: int = 0


@dataclass(slots=True, frozen=True)
class LogEvent:
    """One output line re-emitted for observers."""

    source: ProcessRole
    severity: Severity
    text: str
    timestamp: datetime
    stream: OutputStream = OutputStream.STDOUT


@dataclass(slots=True, frozen=True)
class StatusEvent:
    """Human-readable progress update."""

    text: str
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class LaunchSpec:
    """How to start one external process."""

    program: str
    arguments: tuple[str, ...] = ()
    working_directory: Path | None = None
    env: dict[str, str] | None = None
    capture_stdout: bool = True
    capture_stderr: bool = True

    @classmethod
    def from_command(
        cls,
        command_line: str,
        *,
        working_directory: Path | None = None,
        base_dir: Path | None = None,
        os_name: str | None = None,
    ) -> LaunchSpec:
        """Parse a shell-style command line into a launch spec.

        A relative program path that contains a directory component is
        resolved against ``base_dir``; bare program names are left for PATH
        lookup.
        """

        argv = split_command(command_line, os_name=os_name)
        if not argv:
            raise ValueError("Launch command is empty.")
        program = argv[0]
        if base_dir is not None and _has_dir_component(program):
            program_path = Path(program)
            if not program_path.is_absolute():
                program = str(base_dir / program_path)
        return cls(
            program=program,
            arguments=tuple(argv[1:]),
            working_directory=working_directory,
        )

    def argv(self) -> list[str]:
        return [self.program, *self.arguments]

    def display(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class WorkspaceConfig:
    """Resolved workspace roots; every other path is derived from these."""

    work_root: Path
    data_root: Path
    worker_subdir: str = DEFAULT_WORKER_SUBDIR

    @property
    def worker_dir(self) -> Path:
        return self.work_root / self.worker_subdir

    @property
    def handoff_path(self) -> Path:
        return self.worker_dir / HANDOFF_FILE_NAME

    @property
    def source_db_path(self) -> Path:
        return self.data_root / SOURCE_DB_NAME

    @property
    def progress_db_path(self) -> Path:
        return self.data_root / PROGRESS_DB_NAME

    @property
    def metadata_db_path(self) -> Path:
        return self.data_root / METADATA_DB_NAME


@dataclass(slots=True)
class SessionRunSummary:
    """Aggregate counters for a whole run, for CLI reporting."""

    status: TerminalStatus | None = None
    sessions: int = 0
    completed: int = 0
    failures: int = 0
    backoff_delays: int = 0
    units_processed: int = 0
    persistence_errors: int = 0
    last_stop_reason: str | None = None
    completed_ids: list[str] = field(default_factory=list)


def split_command(command_line: str, *, os_name: str | None = None) -> list[str]:
    """Split a command line using POSIX rules, or Windows quoting on ``nt``."""

    stripped = command_line.strip()
    if not stripped:
        return []
    if (os_name or os.name) != "nt":
        return shlex.split(stripped)
    return [_strip_windows_quotes(token) for token in shlex.split(stripped, posix=False)]


def _strip_windows_quotes(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] == '"':  # noqa: PLR2004
        return token[1:-1].replace('\\"', '"')
    return token


def _has_dir_component(program: str) -> bool:
    return "/" in program or "\\" in program
