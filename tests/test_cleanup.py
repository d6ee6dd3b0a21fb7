from __future__ import annotations

from pathlib import Path

import allure

from artist_runner.engine.cleanup import EnvironmentCleanup

pytestmark = [
    allure.epic("Process Supervision"),
    allure.feature("Environment Cleanup"),
]


def test_worker_commands_run_always_service_commands_only_on_full(echo_cmd) -> None:
    cleanup = EnvironmentCleanup(
        worker_commands=(echo_cmd("--line", "worker-sweep"),),
        service_commands=(echo_cmd("--line", "service-sweep"),),
    )

    partial = cleanup.run(full=False)
    full = cleanup.run(full=True)

    assert [result.ok for result in partial] == [True]
    assert [result.ok for result in full] == [True, True]


def test_failures_are_reported_not_raised(tmp_path: Path, echo_cmd) -> None:
    cleanup = EnvironmentCleanup(
        worker_commands=(
            str(tmp_path / "missing-pkill"),
            echo_cmd("--exit-code", "1"),
        ),
    )

    results = cleanup.run(full=False)

    assert [result.ok for result in results] == [False, False]
    assert results[1].detail == "exit code 1"


def test_timeout_is_reported(echo_cmd) -> None:
    cleanup = EnvironmentCleanup(
        worker_commands=(echo_cmd("--hold"),),
        timeout_seconds=0.5,
    )

    (result,) = cleanup.run(full=False)

    assert result.ok is False
    assert result.detail == "timeout"
