"""Session state machine: backlog pass, retry/backoff, budget and restart."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from artist_runner.engine.backlog import BacklogStore, PersistenceError
from artist_runner.engine.cancellation import CancellationToken
from artist_runner.engine.events import EventHub
from artist_runner.engine.handoff import HandoffFile
from artist_runner.engine.models import (
    RunOutcome,
    SessionPhase,
    SessionRunSummary,
    SessionState,
    TerminalStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_INTER_ITEM_DELAY_SECONDS = 60.0
DEFAULT_FAILURE_BACKOFF_SECONDS = 5.0
DEFAULT_RESTART_DELAY_SECONDS = 30.0

Waiter = Callable[[float, CancellationToken], bool]


class TaskRunner(Protocol):
    """What the session needs from the worker supervisor."""

    def run_task(self, task_id: str, token: CancellationToken) -> RunOutcome: ...

    def request_full_cleanup(self) -> None: ...

    def shutdown(self) -> None: ...


def wait_with_cancel(seconds: float, token: CancellationToken) -> bool:
    """Sleep ``seconds``; ``True`` means the wait was cut short by cancellation."""

    return token.wait(seconds)


@dataclass(slots=True)
class _SessionContext:
    token: CancellationToken
    state: SessionState = field(default_factory=SessionState)
    backlog: list[str] = field(default_factory=list)
    index: int = 0
    item_failures: int = 0
    last_outcome: RunOutcome | None = None
    terminal: TerminalStatus | None = None

    @property
    def current_task(self) -> str:
        return self.backlog[self.index]


_PhaseHandler = Callable[[_SessionContext, SessionRunSummary], SessionPhase]


class SessionController:
    """Drives the backlog through the supervisor until done, failed or cancelled.

    ``LoadingBacklog -> ProcessingItem -> (Succeeded | Failed) -> [loop]
    -> Draining -> LoadingBacklog | Terminal``. Draining recomputes the
    backlog from the stores, so a restart after a failure, a budget stop or
    a crash resumes exactly where the completion records left off.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backlog: BacklogStore,
        supervisor: TaskRunner,
        handoff: HandoffFile,
        events: EventHub | None = None,
        budget_cap: int | None = None,
        inter_item_delay_seconds: float = DEFAULT_INTER_ITEM_DELAY_SECONDS,
        failure_backoff_seconds: float = DEFAULT_FAILURE_BACKOFF_SECONDS,
        restart_delay_seconds: float = DEFAULT_RESTART_DELAY_SECONDS,
        max_attempts_per_item: int | None = None,
        max_sessions: int | None = None,
        waiter: Waiter | None = None,
    ) -> None:
        self.backlog = backlog
        self.supervisor = supervisor
        self.handoff = handoff
        self.events = events or EventHub()
        self.budget_cap = budget_cap or None
        self.inter_item_delay_seconds = inter_item_delay_seconds
        self.failure_backoff_seconds = failure_backoff_seconds
        self.restart_delay_seconds = restart_delay_seconds
        self.max_attempts_per_item = max_attempts_per_item or None
        self.max_sessions = max_sessions or None
        self._wait = waiter or wait_with_cancel

    def run(self, token: CancellationToken) -> SessionRunSummary:
        """Run until a terminal status; environment errors propagate."""

        summary = SessionRunSummary()
        ctx = _SessionContext(token=token)
        handlers: dict[SessionPhase, _PhaseHandler] = {
            SessionPhase.LOADING_BACKLOG: self._load_backlog,
            SessionPhase.PROCESSING_ITEM: self._process_item,
            SessionPhase.SUCCEEDED: self._on_success,
            SessionPhase.FAILED: self._on_failure,
            SessionPhase.DRAINING: self._drain,
        }
        phase = SessionPhase.LOADING_BACKLOG
        try:
            while phase != SessionPhase.TERMINAL:
                logger.debug("Session phase: %s", phase.value)
                phase = handlers[phase](ctx, summary)
        finally:
            self.supervisor.shutdown()

        summary.status = ctx.terminal
        self.events.status(
            f"Run finished: {summary.status.value if summary.status else 'unknown'} "
            f"(completed={summary.completed} failures={summary.failures} "
            f"sessions={summary.sessions}).",
        )
        return summary

    def _load_backlog(self, ctx: _SessionContext, summary: SessionRunSummary) -> SessionPhase:
        ctx.state = SessionState(budget_cap=self.budget_cap)
        ctx.backlog = []
        ctx.index = 0
        ctx.item_failures = 0
        if ctx.token.cancelled:
            ctx.terminal = TerminalStatus.CANCELLED
            return SessionPhase.TERMINAL

        summary.sessions += 1
        ctx.backlog = self.backlog.pending_tasks()
        if not ctx.backlog:
            self.events.status("No pending artists left. All artists have been processed.")
            ctx.terminal = TerminalStatus.COMPLETED
            return SessionPhase.TERMINAL
        self.events.status(f"Session {summary.sessions}: {len(ctx.backlog)} artists pending.")
        return SessionPhase.PROCESSING_ITEM

    def _process_item(
        self,
        ctx: _SessionContext,
        summary: SessionRunSummary,  # noqa: ARG002
    ) -> SessionPhase:
        if ctx.token.cancelled:
            ctx.state.fail("cancelled")
            return SessionPhase.DRAINING
        task_id = ctx.current_task
        self.events.status(f"Processing artist {ctx.index + 1}/{len(ctx.backlog)}: {task_id}")
        self.handoff.write(task_id)
        logger.debug("Wrote %r to %s", task_id, self.handoff.path)

        outcome = self.supervisor.run_task(task_id, ctx.token)
        ctx.last_outcome = outcome
        if outcome.succeeded:
            return SessionPhase.SUCCEEDED
        if outcome.was_cancelled:
            ctx.state.fail("cancelled")
            return SessionPhase.DRAINING
        return SessionPhase.FAILED

    def _on_success(self, ctx: _SessionContext, summary: SessionRunSummary) -> SessionPhase:
        task_id = ctx.current_task
        try:
            self.backlog.mark_complete(task_id)
        except PersistenceError as error:
            # Task succeeded; an unrecorded completion is redone after a restart.
            summary.persistence_errors += 1
            logger.error("Completion of %s not recorded: %s", task_id, error)
            self.events.status(f"Could not record completion of {task_id}: {error}")
        metrics = self.backlog.task_metrics(task_id)
        ctx.state.cumulative_units_processed += metrics.unit_count
        summary.units_processed += metrics.unit_count
        summary.completed += 1
        summary.completed_ids.append(task_id)
        ctx.item_failures = 0
        self.handoff.clear()

        if ctx.state.budget_exceeded:
            ctx.state.fail(
                f"budget cap exceeded ({ctx.state.cumulative_units_processed} > "
                f"{ctx.state.budget_cap})",
            )
            self.events.status(
                f"Task for '{metrics.display_name}' completed; {ctx.state.stop_reason}.",
            )
            return SessionPhase.DRAINING

        ctx.index += 1
        if ctx.index >= len(ctx.backlog):
            self.events.status(f"Task for '{metrics.display_name}' completed. Backlog exhausted.")
            ctx.terminal = TerminalStatus.COMPLETED
            return SessionPhase.TERMINAL

        self.events.status(
            f"Task for '{metrics.display_name}' completed "
            f"({ctx.state.cumulative_units_processed} units this session). "
            f"Waiting {self.inter_item_delay_seconds:g} seconds...",
        )
        if self._wait(self.inter_item_delay_seconds, ctx.token):
            ctx.state.fail("cancelled")
            return SessionPhase.DRAINING
        return SessionPhase.PROCESSING_ITEM

    def _on_failure(self, ctx: _SessionContext, summary: SessionRunSummary) -> SessionPhase:
        task_id = ctx.current_task
        reason = ctx.last_outcome.reason if ctx.last_outcome is not None else None
        summary.failures += 1
        ctx.item_failures += 1

        limit = self.max_attempts_per_item
        if limit is not None and ctx.item_failures >= limit:
            ctx.state.fail(f"{task_id} failed {ctx.item_failures} times (last: {reason})")
            self.events.status(f"Giving up on {task_id} this session: {ctx.state.stop_reason}.")
            return SessionPhase.DRAINING

        self.events.status(
            f"Task for artist {task_id} failed ({reason}). "
            f"Restarting in {self.failure_backoff_seconds:g} seconds...",
        )
        summary.backoff_delays += 1
        if self._wait(self.failure_backoff_seconds, ctx.token):
            ctx.state.fail("cancelled")
            return SessionPhase.DRAINING
        return SessionPhase.PROCESSING_ITEM

    def _drain(self, ctx: _SessionContext, summary: SessionRunSummary) -> SessionPhase:
        ctx.state.need_full_cleanup = True
        summary.last_stop_reason = ctx.state.stop_reason
        self.events.status(f"Session stopped ({ctx.state.stop_reason}). Forcing full cleanup.")
        self.supervisor.request_full_cleanup()
        self.handoff.clear()

        if ctx.token.cancelled:
            self.events.status("Processing cancelled.")
            ctx.terminal = TerminalStatus.CANCELLED
            return SessionPhase.TERMINAL
        if self.max_sessions is not None and summary.sessions >= self.max_sessions:
            self.events.status(f"Session limit of {self.max_sessions} reached. Stopping.")
            ctx.terminal = TerminalStatus.FAILED
            return SessionPhase.TERMINAL

        self.events.status(
            f"Restarting session in {self.restart_delay_seconds:g} seconds with a fresh backlog...",
        )
        if self._wait(self.restart_delay_seconds, ctx.token):
            ctx.terminal = TerminalStatus.CANCELLED
            return SessionPhase.TERMINAL
        return SessionPhase.LOADING_BACKLOG
