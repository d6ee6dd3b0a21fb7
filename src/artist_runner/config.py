"""Runtime configuration for the artist backlog runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from artist_runner.engine.models import (
    DEFAULT_WORKER_SUBDIR,
    LaunchSpec,
    WorkspaceConfig,
)
from artist_runner.engine.sentinels import (
    DEFAULT_SERVICE_RULES,
    DEFAULT_WORKER_RULES,
    SentinelRule,
    parse_rules,
)

DEFAULT_SERVICE_COMMAND = (
    'wsl1/LxRunOffline.exe r -n deb-amd -c "cd /root/wm && '
    './wrapper-manager -host 0.0.0.0 -port 8080 -debug"'
)
DEFAULT_WORKER_COMMAND = (
    'wsl1/LxRunOffline.exe r -n deb-amd -c "/root/.local/bin/poetry run python3 main.py"'
)
_CLEANUP_SEPARATOR = ";;"


@dataclass(slots=True)
class ProcessSettings:
    """How the service and worker programs are launched and judged."""

    service_command: str = DEFAULT_SERVICE_COMMAND
    worker_command: str = DEFAULT_WORKER_COMMAND
    success_exit_code: int = 0
    service_ready_timeout_seconds: float | None = None
    kill_timeout_seconds: float = 5.0
    service_rules: tuple[SentinelRule, ...] = DEFAULT_SERVICE_RULES
    worker_rules: tuple[SentinelRule, ...] = DEFAULT_WORKER_RULES
    worker_cleanup_commands: tuple[str, ...] = ()
    service_cleanup_commands: tuple[str, ...] = ()
    cleanup_timeout_seconds: float = 30.0


@dataclass(slots=True)
class SessionSettings:
    """Retry, delay and budget policy."""

    inter_item_delay_seconds: float = 60.0
    failure_backoff_seconds: float = 5.0
    restart_delay_seconds: float = 30.0
    budget_cap: int | None = None
    max_attempts_per_item: int | None = None
    max_sessions: int | None = None


@dataclass(slots=True)
class StoreSettings:
    """Where task ids and enrichment come from."""

    source_table: str = "artists"
    source_column: str = "id"
    source_file: Path | None = None
    metadata_table: str = "artists"
    metadata_id_column: str = "id"
    metadata_name_column: str = "name"
    metadata_units_column: str = "track_count"
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    work_root: Path = field(default_factory=Path.cwd)
    data_root: Path | None = None
    worker_subdir: str = DEFAULT_WORKER_SUBDIR
    process: ProcessSettings = field(default_factory=ProcessSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    stores: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(
        cls,
        work_root: Path | None = None,
        data_root: Path | None = None,
    ) -> Settings:
        """Load settings from ``ARTIST_RUNNER_*`` variables with local defaults."""

        resolved_work_root = work_root or Path(os.getenv("ARTIST_RUNNER_WORK_ROOT") or Path.cwd())
        data_root_env = os.getenv("ARTIST_RUNNER_DATA_ROOT")
        source_file_env = os.getenv("ARTIST_RUNNER_SOURCE_FILE", "").strip()
        return cls(
            work_root=resolved_work_root,
            data_root=data_root or (Path(data_root_env) if data_root_env else None),
            worker_subdir=os.getenv("ARTIST_RUNNER_WORKER_SUBDIR", DEFAULT_WORKER_SUBDIR),
            process=ProcessSettings(
                service_command=os.getenv("ARTIST_RUNNER_SERVICE_COMMAND", DEFAULT_SERVICE_COMMAND),
                worker_command=os.getenv("ARTIST_RUNNER_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                success_exit_code=int(os.getenv("ARTIST_RUNNER_SUCCESS_EXIT_CODE", "0")),
                service_ready_timeout_seconds=_env_optional_float(
                    "ARTIST_RUNNER_SERVICE_READY_TIMEOUT_SECONDS",
                ),
                kill_timeout_seconds=float(os.getenv("ARTIST_RUNNER_KILL_TIMEOUT_SECONDS", "5")),
                service_rules=_env_rules("ARTIST_RUNNER_SERVICE_SENTINELS", DEFAULT_SERVICE_RULES),
                worker_rules=_env_rules("ARTIST_RUNNER_WORKER_SENTINELS", DEFAULT_WORKER_RULES),
                worker_cleanup_commands=_env_commands("ARTIST_RUNNER_WORKER_CLEANUP_COMMANDS"),
                service_cleanup_commands=_env_commands("ARTIST_RUNNER_SERVICE_CLEANUP_COMMANDS"),
                cleanup_timeout_seconds=float(
                    os.getenv("ARTIST_RUNNER_CLEANUP_TIMEOUT_SECONDS", "30"),
                ),
            ),
            session=SessionSettings(
                inter_item_delay_seconds=float(
                    os.getenv("ARTIST_RUNNER_INTER_ITEM_DELAY_SECONDS", "60"),
                ),
                failure_backoff_seconds=float(
                    os.getenv("ARTIST_RUNNER_FAILURE_BACKOFF_SECONDS", "5"),
                ),
                restart_delay_seconds=float(os.getenv("ARTIST_RUNNER_RESTART_DELAY_SECONDS", "30")),
                budget_cap=_env_optional_int("ARTIST_RUNNER_BUDGET_CAP"),
                max_attempts_per_item=_env_optional_int("ARTIST_RUNNER_MAX_ATTEMPTS_PER_ITEM"),
                max_sessions=_env_optional_int("ARTIST_RUNNER_MAX_SESSIONS"),
            ),
            stores=StoreSettings(
                source_table=os.getenv("ARTIST_RUNNER_SOURCE_TABLE", "artists"),
                source_column=os.getenv("ARTIST_RUNNER_SOURCE_COLUMN", "id"),
                source_file=Path(source_file_env) if source_file_env else None,
                metadata_table=os.getenv("ARTIST_RUNNER_METADATA_TABLE", "artists"),
                metadata_id_column=os.getenv("ARTIST_RUNNER_METADATA_ID_COLUMN", "id"),
                metadata_name_column=os.getenv("ARTIST_RUNNER_METADATA_NAME_COLUMN", "name"),
                metadata_units_column=os.getenv(
                    "ARTIST_RUNNER_METADATA_UNITS_COLUMN",
                    "track_count",
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("ARTIST_RUNNER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
        )

    @property
    def workspace(self) -> WorkspaceConfig:
        return WorkspaceConfig(
            work_root=self.work_root,
            data_root=self.data_root or self.work_root,
            worker_subdir=self.worker_subdir,
        )

    def service_launch_spec(self) -> LaunchSpec:
        return LaunchSpec.from_command(
            self.process.service_command,
            working_directory=self.work_root,
            base_dir=self.work_root,
        )

    def worker_launch_spec(self) -> LaunchSpec:
        return LaunchSpec.from_command(
            self.process.worker_command,
            working_directory=self.workspace.worker_dir,
            base_dir=self.work_root,
        )

    def validate(self) -> None:
        """Raise configuration error if values are unusable."""

        if not self.work_root.is_dir():
            raise ValueError(f"ARTIST_RUNNER_WORK_ROOT is not a directory: {self.work_root}")
        if self.data_root is not None and not self.data_root.is_dir():
            raise ValueError(f"ARTIST_RUNNER_DATA_ROOT is not a directory: {self.data_root}")
        if not self.worker_subdir.strip():
            raise ValueError("ARTIST_RUNNER_WORKER_SUBDIR must not be empty.")
        if not self.process.service_command.strip():
            raise ValueError("ARTIST_RUNNER_SERVICE_COMMAND must not be empty.")
        if not self.process.worker_command.strip():
            raise ValueError("ARTIST_RUNNER_WORKER_COMMAND must not be empty.")
        if self.process.kill_timeout_seconds <= 0:
            raise ValueError("ARTIST_RUNNER_KILL_TIMEOUT_SECONDS must be > 0.")
        if (
            self.process.service_ready_timeout_seconds is not None
            and self.process.service_ready_timeout_seconds <= 0
        ):
            raise ValueError("ARTIST_RUNNER_SERVICE_READY_TIMEOUT_SECONDS must be > 0.")
        for name, value in (
            ("ARTIST_RUNNER_INTER_ITEM_DELAY_SECONDS", self.session.inter_item_delay_seconds),
            ("ARTIST_RUNNER_FAILURE_BACKOFF_SECONDS", self.session.failure_backoff_seconds),
            ("ARTIST_RUNNER_RESTART_DELAY_SECONDS", self.session.restart_delay_seconds),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        for name, optional in (
            ("ARTIST_RUNNER_BUDGET_CAP", self.session.budget_cap),
            ("ARTIST_RUNNER_MAX_ATTEMPTS_PER_ITEM", self.session.max_attempts_per_item),
            ("ARTIST_RUNNER_MAX_SESSIONS", self.session.max_sessions),
        ):
            if optional is not None and optional < 0:
                raise ValueError(f"{name} must be >= 0 (0 disables the limit).")
        if not self.process.worker_rules:
            raise ValueError("ARTIST_RUNNER_WORKER_SENTINELS must define at least one rule.")
        if not self.process.service_rules:
            raise ValueError("ARTIST_RUNNER_SERVICE_SENTINELS must define at least one rule.")


def _env_rules(name: str, default: tuple[SentinelRule, ...]) -> tuple[SentinelRule, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return parse_rules(raw)
    except ValueError as error:
        raise ValueError(f"Invalid {name}: {error}") from error


def _env_commands(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(_CLEANUP_SEPARATOR) if part.strip())


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error
    return value or None


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error
    return value or None
