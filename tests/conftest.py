"""Shared test fixtures."""

from __future__ import annotations

import os
import sqlite3
import sys
from pathlib import Path

import pytest

from artist_runner.engine.models import LaunchSpec

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
_ECHO_MODULE = "artist_runner.engine.echo_process"

_CONFIG_ENV_PREFIX = "ARTIST_RUNNER_"


def echo_spec(*args: str, cwd: Path | None = None) -> LaunchSpec:
    """Launch spec for the scripted echo process."""

    return LaunchSpec(
        program=sys.executable,
        arguments=("-m", _ECHO_MODULE, *args),
        working_directory=cwd,
        env={"PYTHONPATH": _python_path(), "PYTHONUNBUFFERED": "1"},
    )


def echo_command(*args: str) -> str:
    """Shell-style command line for the scripted echo process."""

    return " ".join([sys.executable, "-m", _ECHO_MODULE, *args])


def create_source_db(path: Path, ids: list[str | None], *, table: str = "artists") -> Path:
    connection = sqlite3.connect(path)
    try:
        connection.execute(f"CREATE TABLE {table} (id TEXT)")
        connection.executemany(f"INSERT INTO {table} (id) VALUES (?)", [(i,) for i in ids])
        connection.commit()
    finally:
        connection.close()
    return path


def create_metadata_db(path: Path, rows: dict[str, tuple[str, int]]) -> Path:
    connection = sqlite3.connect(path)
    try:
        connection.execute("CREATE TABLE artists (id TEXT PRIMARY KEY, name TEXT, track_count INT)")
        connection.executemany(
            "INSERT INTO artists (id, name, track_count) VALUES (?, ?, ?)",
            [(task_id, name, units) for task_id, (name, units) in rows.items()],
        )
        connection.commit()
    finally:
        connection.close()
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop inherited ARTIST_RUNNER_* variables; make the echo helper importable."""

    for name in list(os.environ):
        if name.startswith(_CONFIG_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PYTHONPATH", _python_path())


@pytest.fixture()
def echo():
    """Factory for echo-process launch specs."""

    return echo_spec


@pytest.fixture()
def echo_cmd():
    """Factory for echo-process command lines."""

    return echo_command


@pytest.fixture()
def make_source_db():
    return create_source_db


@pytest.fixture()
def make_metadata_db():
    return create_metadata_db


def _python_path() -> str:
    parts = [str(_SRC_DIR), *os.environ.get("PYTHONPATH", "").split(os.pathsep)]
    return os.pathsep.join(dict.fromkeys(part for part in parts if part))
