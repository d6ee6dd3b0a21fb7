"""Environment-scoped cleanup commands run after every task attempt."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

from artist_runner.engine.models import split_command

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_TIMEOUT_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class CleanupResult:
    command: str
    ok: bool
    detail: str


class EnvironmentCleanup:
    """Runs kill commands inside the execution environment.

    Process handles only reach processes they started. Programs started
    through a host wrapper (for example a WSL launcher) leave their real
    process tree inside the wrapped environment, so these commands sweep it.
    Worker commands run after every attempt; service commands only on full
    cleanup. Failures are logged and never raised.
    """

    def __init__(
        self,
        *,
        worker_commands: tuple[str, ...] = (),
        service_commands: tuple[str, ...] = (),
        timeout_seconds: float = DEFAULT_CLEANUP_TIMEOUT_SECONDS,
        os_name: str | None = None,
    ) -> None:
        self.worker_commands = tuple(command for command in worker_commands if command.strip())
        self.service_commands = tuple(command for command in service_commands if command.strip())
        self.timeout_seconds = timeout_seconds
        self.os_name = os_name

    def run(self, *, full: bool) -> list[CleanupResult]:
        commands = self.worker_commands + (self.service_commands if full else ())
        return [self._run_one(command) for command in commands]

    def _run_one(self, command: str) -> CleanupResult:
        argv = split_command(command, os_name=self.os_name)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Cleanup command timed out after %ss: %s", self.timeout_seconds, command)
            return CleanupResult(command=command, ok=False, detail="timeout")
        except OSError as error:
            logger.warning("Cleanup command failed to start: %s (%s)", command, error)
            return CleanupResult(command=command, ok=False, detail=str(error))

        if completed.returncode != 0:
            # pkill-style commands exit non-zero when nothing matched.
            logger.debug(
                "Cleanup command exited with %s: %s %s",
                completed.returncode,
                command,
                completed.stderr.strip(),
            )
            return CleanupResult(
                command=command,
                ok=False,
                detail=f"exit code {completed.returncode}",
            )
        logger.debug("Cleanup command succeeded: %s", command)
        return CleanupResult(command=command, ok=True, detail="ok")
