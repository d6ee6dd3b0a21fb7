"""Controllers for runner CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from artist_runner.config import Settings
from artist_runner.engine.backlog import (
    BacklogStore,
    CandidateSource,
    SqliteCandidateSource,
    SqliteMetadataLookup,
    TextFileCandidateSource,
)
from artist_runner.engine.cancellation import CancellationToken, signal_handlers
from artist_runner.engine.cleanup import EnvironmentCleanup
from artist_runner.engine.events import EventHub
from artist_runner.engine.handoff import HandoffFile
from artist_runner.engine.models import SessionRunSummary, TerminalStatus
from artist_runner.engine.sentinels import SentinelMatcher, classify_severity
from artist_runner.engine.session import SessionController
from artist_runner.engine.supervisor import WorkerSupervisor


@dataclass(slots=True)
class RunCommand:
    """CLI inputs for the processing loop."""

    work_root: Path | None
    data_root: Path | None
    budget_cap: int | None
    max_sessions: int | None
    max_attempts_per_item: int | None


@dataclass(slots=True)
class BacklogCommand:
    """CLI inputs for backlog inspection."""

    work_root: Path | None
    data_root: Path | None
    limit: int
    show_completed: bool


@dataclass(slots=True)
class MarkCompleteCommand:
    """CLI inputs for manual completion records."""

    work_root: Path | None
    data_root: Path | None
    task_ids: tuple[str, ...]


@dataclass(slots=True)
class ClassifyCommand:
    """CLI inputs for sentinel dry-runs."""

    lines: tuple[str, ...]


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI."""

    lines: list[str]
    summary: SessionRunSummary

    @property
    def success(self) -> bool:
        return self.summary.status == TerminalStatus.COMPLETED


class RunnerCliController:
    """Coordinates runner command execution."""

    def __init__(self, token_factory=CancellationToken) -> None:
        self._token_factory = token_factory

    def run(self, command: RunCommand) -> RunResult:
        settings = _settings(command.work_root, command.data_root)
        if command.budget_cap is not None:
            settings.session.budget_cap = command.budget_cap or None
        if command.max_sessions is not None:
            settings.session.max_sessions = command.max_sessions or None
        if command.max_attempts_per_item is not None:
            settings.session.max_attempts_per_item = command.max_attempts_per_item or None
        settings.validate()

        workspace = settings.workspace
        events = EventHub()
        supervisor = WorkerSupervisor(
            service_spec=settings.service_launch_spec(),
            worker_spec=settings.worker_launch_spec(),
            events=events,
            service_rules=settings.process.service_rules,
            worker_rules=settings.process.worker_rules,
            success_exit_code=settings.process.success_exit_code,
            service_ready_timeout_seconds=settings.process.service_ready_timeout_seconds,
            cleanup=EnvironmentCleanup(
                worker_commands=settings.process.worker_cleanup_commands,
                service_commands=settings.process.service_cleanup_commands,
                timeout_seconds=settings.process.cleanup_timeout_seconds,
            ),
            kill_timeout_seconds=settings.process.kill_timeout_seconds,
        )
        token = self._token_factory()
        with _backlog(settings) as backlog, signal_handlers(token):
            session = SessionController(
                backlog=backlog,
                supervisor=supervisor,
                handoff=HandoffFile(workspace.handoff_path),
                events=events,
                budget_cap=settings.session.budget_cap,
                inter_item_delay_seconds=settings.session.inter_item_delay_seconds,
                failure_backoff_seconds=settings.session.failure_backoff_seconds,
                restart_delay_seconds=settings.session.restart_delay_seconds,
                max_attempts_per_item=settings.session.max_attempts_per_item,
                max_sessions=settings.session.max_sessions,
            )
            summary = session.run(token)

        status = summary.status.value if summary.status is not None else "unknown"
        lines = [
            "Run finished: "
            f"status={status} sessions={summary.sessions} "
            f"completed={summary.completed} failures={summary.failures} "
            f"backoffs={summary.backoff_delays} units={summary.units_processed} "
            f"persistence_errors={summary.persistence_errors}",
        ]
        if summary.last_stop_reason:
            lines.append(f"Last stop reason: {summary.last_stop_reason}")
        return RunResult(lines=lines, summary=summary)

    def backlog(self, command: BacklogCommand) -> list[str]:
        settings = _settings(command.work_root, command.data_root)
        with _backlog(settings) as backlog:
            pending = backlog.pending_tasks()
            completed = backlog.completed_ids()

        lines = [f"Backlog: pending={len(pending)} completed={len(completed)}"]
        for task_id in pending[: command.limit]:
            lines.append(f"  pending {task_id}")
        if len(pending) > command.limit:
            lines.append(f"  ... {len(pending) - command.limit} more")
        if command.show_completed:
            for task_id in completed[: command.limit]:
                lines.append(f"  done    {task_id}")
        return lines

    def mark_complete(self, command: MarkCompleteCommand) -> list[str]:
        settings = _settings(command.work_root, command.data_root)
        lines: list[str] = []
        with _backlog(settings) as backlog:
            for task_id in command.task_ids:
                inserted = backlog.mark_complete(task_id)
                lines.append(
                    f"{task_id}: {'marked complete' if inserted else 'already complete'}",
                )
        return lines

    def classify(self, command: ClassifyCommand) -> list[str]:
        settings = Settings.from_env()
        service = SentinelMatcher(settings.process.service_rules)
        worker = SentinelMatcher(settings.process.worker_rules)
        lines: list[str] = []
        for text in command.lines:
            service_match = service.match(text)
            worker_match = worker.match(text)
            lines.append(
                f"{text!r}: severity={classify_severity(text).value} "
                f"service={_describe_match(service_match)} "
                f"worker={_describe_match(worker_match)}",
            )
        return lines


def _settings(work_root: Path | None, data_root: Path | None) -> Settings:
    return Settings.from_env(work_root=work_root, data_root=data_root)


@contextmanager
def _backlog(settings: Settings) -> Iterator[BacklogStore]:
    workspace = settings.workspace
    stores = settings.stores
    source: CandidateSource
    if stores.source_file is not None:
        source = TextFileCandidateSource(stores.source_file)
    else:
        source = SqliteCandidateSource(
            workspace.source_db_path,
            table_name=stores.source_table,
            column_name=stores.source_column,
            busy_timeout_ms=stores.sqlite_busy_timeout_ms,
        )
    backlog = BacklogStore(
        source=source,
        progress_db_path=workspace.progress_db_path,
        metadata=SqliteMetadataLookup(
            workspace.metadata_db_path,
            table_name=stores.metadata_table,
            id_column=stores.metadata_id_column,
            name_column=stores.metadata_name_column,
            units_column=stores.metadata_units_column,
            busy_timeout_ms=stores.sqlite_busy_timeout_ms,
        ),
        busy_timeout_ms=stores.sqlite_busy_timeout_ms,
    )
    try:
        yield backlog
    finally:
        backlog.close()


def _describe_match(match) -> str:
    if match is None:
        return "-"
    return f"{match.signal.value} ({match.matched_pattern!r})"
