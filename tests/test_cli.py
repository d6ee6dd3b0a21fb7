from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from artist_runner.main import artist_runner

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Runner Commands"),
]


def _prepare_workspace(tmp_path: Path, monkeypatch, ids: list[str]) -> Path:
    (tmp_path / "AppleMusicDecrypt").mkdir()
    source_file = tmp_path / "ids.txt"
    source_file.write_text("\n".join(ids) + "\n", "utf-8")
    monkeypatch.setenv("ARTIST_RUNNER_SOURCE_FILE", str(source_file))
    return tmp_path


def test_run_processes_backlog_with_real_processes(tmp_path: Path, monkeypatch, echo_cmd) -> None:
    work_root = _prepare_workspace(tmp_path, monkeypatch, ["A", "B"])
    handoff = work_root / "AppleMusicDecrypt" / "artists.txt"
    monkeypatch.setenv(
        "ARTIST_RUNNER_SERVICE_COMMAND",
        echo_cmd("--line", "listening-on-8080", "--hold"),
    )
    monkeypatch.setenv(
        "ARTIST_RUNNER_WORKER_COMMAND",
        echo_cmd("--handoff", str(handoff), "--line", "All-tasks-completed.", "--hold"),
    )
    monkeypatch.setenv("ARTIST_RUNNER_SERVICE_SENTINELS", "listening-on|service_ready")
    monkeypatch.setenv("ARTIST_RUNNER_WORKER_SENTINELS", "all-tasks-completed.|task_success")
    monkeypatch.setenv("ARTIST_RUNNER_INTER_ITEM_DELAY_SECONDS", "0")
    monkeypatch.setenv("ARTIST_RUNNER_SERVICE_READY_TIMEOUT_SECONDS", "30")

    result = CliRunner().invoke(artist_runner, ["run", "--work-root", str(work_root)])

    assert result.exit_code == 0, result.output
    assert "status=completed" in result.output
    assert "completed=2" in result.output
    assert (work_root / "process_artists.db").exists()
    assert handoff.read_text("utf-8") == ""


def test_run_reports_missing_source_database(tmp_path: Path) -> None:
    result = CliRunner().invoke(artist_runner, ["run", "--work-root", str(tmp_path)])

    assert result.exit_code == 1
    assert "Candidate source database not found" in result.output


def test_run_reports_invalid_configuration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARTIST_RUNNER_KILL_TIMEOUT_SECONDS", "0")

    result = CliRunner().invoke(artist_runner, ["run", "--work-root", str(tmp_path)])

    assert result.exit_code == 1
    assert "ARTIST_RUNNER_KILL_TIMEOUT_SECONDS" in result.output


def test_mark_complete_then_backlog(tmp_path: Path, monkeypatch) -> None:
    work_root = _prepare_workspace(tmp_path, monkeypatch, ["A", "B", "C"])
    runner = CliRunner()

    marked = runner.invoke(
        artist_runner,
        ["mark-complete", "--work-root", str(work_root), "B", "B"],
    )
    listed = runner.invoke(
        artist_runner,
        ["backlog", "--work-root", str(work_root), "--show-completed"],
    )

    assert marked.exit_code == 0, marked.output
    assert marked.output.splitlines() == ["B: marked complete", "B: already complete"]
    assert listed.exit_code == 0, listed.output
    assert "Backlog: pending=2 completed=1" in listed.output
    assert "pending A" in listed.output
    assert "done    B" in listed.output


def test_classify_shows_severity_and_signals() -> None:
    result = CliRunner().invoke(artist_runner, ["classify", "FATAL: disk full", "Wrapper down"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert "severity=ERROR" in lines[0]
    assert "worker=task_failure" in lines[0]
    assert "service=service_down" in lines[1]
