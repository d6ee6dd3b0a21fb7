from __future__ import annotations

from pathlib import Path

import allure
import pytest

from artist_runner.config import (
    DEFAULT_WORKER_COMMAND,
    ProcessSettings,
    SessionSettings,
    Settings,
)
from artist_runner.engine.models import Signal
from artist_runner.engine.sentinels import DEFAULT_WORKER_RULES, SentinelRule

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_derive_every_path_from_work_root(tmp_path: Path) -> None:
    settings = Settings.from_env(work_root=tmp_path)
    workspace = settings.workspace

    assert workspace.handoff_path == tmp_path / "AppleMusicDecrypt" / "artists.txt"
    assert workspace.source_db_path == tmp_path / "artistNames.db"
    assert workspace.progress_db_path == tmp_path / "process_artists.db"
    assert workspace.metadata_db_path == tmp_path / "am_metadata.sqlite"
    assert settings.session.inter_item_delay_seconds == 60.0
    assert settings.session.failure_backoff_seconds == 5.0
    assert settings.session.budget_cap is None
    assert settings.process.worker_rules == DEFAULT_WORKER_RULES


def test_data_root_separates_stores_from_worker(tmp_path: Path, monkeypatch) -> None:
    data_root = tmp_path / "data"
    monkeypatch.setenv("ARTIST_RUNNER_DATA_ROOT", str(data_root))

    workspace = Settings.from_env(work_root=tmp_path).workspace

    assert workspace.progress_db_path == data_root / "process_artists.db"
    assert workspace.handoff_path.parent == tmp_path / "AppleMusicDecrypt"


def test_launch_specs_resolve_relative_launcher_against_work_root(tmp_path: Path) -> None:
    settings = Settings.from_env(work_root=tmp_path)

    worker = settings.worker_launch_spec()
    service = settings.service_launch_spec()

    assert worker.program == str(tmp_path / "wsl1" / "LxRunOffline.exe")
    assert worker.working_directory == tmp_path / "AppleMusicDecrypt"
    assert worker.arguments[-1] == "/root/.local/bin/poetry run python3 main.py"
    assert service.working_directory == tmp_path
    assert "wrapper-manager" in service.arguments[-1]


def test_env_overrides_are_parsed(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARTIST_RUNNER_WORKER_COMMAND", "python worker.py --fast")
    monkeypatch.setenv("ARTIST_RUNNER_BUDGET_CAP", "500")
    monkeypatch.setenv("ARTIST_RUNNER_MAX_SESSIONS", "0")
    monkeypatch.setenv("ARTIST_RUNNER_SERVICE_READY_TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("ARTIST_RUNNER_WORKER_SENTINELS", "Export done|task_success")
    monkeypatch.setenv(
        "ARTIST_RUNNER_WORKER_CLEANUP_COMMANDS",
        "pkill -f main.py ;; ;;pkill -f ffmpeg",
    )
    monkeypatch.setenv("ARTIST_RUNNER_SOURCE_FILE", str(tmp_path / "ids.txt"))

    settings = Settings.from_env(work_root=tmp_path)

    assert settings.process.worker_command == "python worker.py --fast"
    assert settings.worker_launch_spec().program == "python"
    assert settings.session.budget_cap == 500
    assert settings.session.max_sessions is None
    assert settings.process.service_ready_timeout_seconds == 45.0
    assert settings.process.worker_rules == (SentinelRule("Export done", Signal.TASK_SUCCESS),)
    assert settings.process.worker_cleanup_commands == ("pkill -f main.py", "pkill -f ffmpeg")
    assert settings.stores.source_file == tmp_path / "ids.txt"


def test_invalid_sentinel_env_names_the_variable(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARTIST_RUNNER_SERVICE_SENTINELS", "ready")

    with pytest.raises(ValueError, match="ARTIST_RUNNER_SERVICE_SENTINELS"):
        Settings.from_env(work_root=tmp_path)


def test_invalid_integer_env_names_the_variable(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARTIST_RUNNER_BUDGET_CAP", "lots")

    with pytest.raises(ValueError, match="ARTIST_RUNNER_BUDGET_CAP"):
        Settings.from_env(work_root=tmp_path)


def test_validate_rejects_missing_work_root(tmp_path: Path) -> None:
    settings = Settings(work_root=tmp_path / "absent")

    with pytest.raises(ValueError, match="ARTIST_RUNNER_WORK_ROOT"):
        settings.validate()


def test_validate_rejects_negative_delay(tmp_path: Path) -> None:
    settings = Settings(
        work_root=tmp_path,
        session=SessionSettings(failure_backoff_seconds=-1),
    )

    with pytest.raises(ValueError, match="FAILURE_BACKOFF_SECONDS"):
        settings.validate()


def test_validate_rejects_empty_worker_command(tmp_path: Path) -> None:
    settings = Settings(work_root=tmp_path, process=ProcessSettings(worker_command="  "))

    with pytest.raises(ValueError, match="ARTIST_RUNNER_WORKER_COMMAND"):
        settings.validate()


def test_validate_accepts_defaults(tmp_path: Path) -> None:
    settings = Settings(work_root=tmp_path)

    settings.validate()
    assert settings.process.worker_command == DEFAULT_WORKER_COMMAND
