from __future__ import annotations

from pathlib import Path

import allure
import pytest

from artist_runner.engine.backlog import (
    BacklogStore,
    PersistenceError,
    SourceUnavailable,
    SqliteCandidateSource,
    SqliteMetadataLookup,
    TextFileCandidateSource,
)
from artist_runner.engine.models import TaskMetrics

pytestmark = [
    allure.epic("Backlog"),
    allure.feature("Pending Tasks & Completion Records"),
]


def _store(tmp_path: Path, source, metadata=None) -> BacklogStore:
    return BacklogStore(
        source=source,
        progress_db_path=tmp_path / "process_artists.db",
        metadata=metadata,
    )


def test_pending_is_candidates_minus_completed_in_source_order(
    tmp_path: Path,
    make_source_db,
) -> None:
    db = make_source_db(tmp_path / "artistNames.db", ["A", "B", "C", "D", "E"])
    store = _store(tmp_path, SqliteCandidateSource(db))
    try:
        store.mark_complete("B")
        store.mark_complete("D")

        assert store.pending_tasks() == ["A", "C", "E"]
    finally:
        store.close()


def test_completion_survives_restart(tmp_path: Path, make_source_db) -> None:
    db = make_source_db(tmp_path / "artistNames.db", ["1", "2", "3", "4", "5"])
    first = _store(tmp_path, SqliteCandidateSource(db))
    first.mark_complete("1")
    first.mark_complete("2")
    first.close()

    second = _store(tmp_path, SqliteCandidateSource(db))
    try:
        assert second.pending_tasks() == ["3", "4", "5"]
        assert sorted(second.completed_ids()) == ["1", "2"]
    finally:
        second.close()


def test_mark_complete_is_idempotent(tmp_path: Path) -> None:
    source_file = tmp_path / "ids.txt"
    source_file.write_text("A\n", "utf-8")
    store = _store(tmp_path, TextFileCandidateSource(source_file))
    try:
        assert store.mark_complete("A") is True
        assert store.mark_complete("A") is False
        assert store.completed_ids() == ["A"]
        assert store.pending_tasks() == []
    finally:
        store.close()


def test_sqlite_source_skips_nulls_blanks_and_duplicates(tmp_path: Path, make_source_db) -> None:
    db = make_source_db(tmp_path / "artistNames.db", ["A", None, " ", "B", "A", " C "])

    assert SqliteCandidateSource(db).candidate_ids() == ["A", "B", "C"]


def test_missing_source_database_is_source_unavailable(tmp_path: Path) -> None:
    store = _store(tmp_path, SqliteCandidateSource(tmp_path / "missing.db"))
    try:
        with pytest.raises(SourceUnavailable, match="not found"):
            store.pending_tasks()
    finally:
        store.close()
    assert not (tmp_path / "missing.db").exists()


def test_unknown_source_table_is_source_unavailable(tmp_path: Path, make_source_db) -> None:
    db = make_source_db(tmp_path / "artistNames.db", ["A"])

    with pytest.raises(SourceUnavailable, match="names.id"):
        SqliteCandidateSource(db, table_name="names").candidate_ids()


def test_missing_text_source_is_source_unavailable(tmp_path: Path) -> None:
    with pytest.raises(SourceUnavailable, match="Cannot read candidate list"):
        TextFileCandidateSource(tmp_path / "nope.txt").candidate_ids()


def test_text_source_handles_bom_and_blank_lines(tmp_path: Path) -> None:
    source_file = tmp_path / "artists.txt"
    source_file.write_text("\ufeff111\n\n222\r\n111\n", "utf-8")

    assert TextFileCandidateSource(source_file).candidate_ids() == ["111", "222"]


def test_unwritable_progress_store_raises_persistence_error(tmp_path: Path) -> None:
    source_file = tmp_path / "ids.txt"
    source_file.write_text("A\n", "utf-8")
    blocker = tmp_path / "blocker"
    blocker.write_text("", "utf-8")
    store = BacklogStore(
        source=TextFileCandidateSource(source_file),
        progress_db_path=blocker / "process_artists.db",
    )

    with pytest.raises(PersistenceError):
        store.mark_complete("A")


def test_metrics_come_from_metadata_database(tmp_path: Path, make_metadata_db) -> None:
    db = make_metadata_db(tmp_path / "am_metadata.sqlite", {"42": ("Some Band", 120)})
    source_file = tmp_path / "ids.txt"
    source_file.write_text("42\n", "utf-8")
    store = _store(tmp_path, TextFileCandidateSource(source_file), SqliteMetadataLookup(db))
    try:
        assert store.task_metrics("42") == TaskMetrics(display_name="Some Band", unit_count=120)
        assert store.task_metrics("7") == TaskMetrics(display_name="7", unit_count=0)
    finally:
        store.close()


def test_metrics_degrade_to_placeholder_on_lookup_error(tmp_path: Path) -> None:
    class _BrokenLookup:
        def lookup(self, task_id: str) -> TaskMetrics | None:
            raise RuntimeError("metadata offline")

    source_file = tmp_path / "ids.txt"
    source_file.write_text("A\n", "utf-8")
    store = _store(tmp_path, TextFileCandidateSource(source_file), _BrokenLookup())

    assert store.task_metrics("A") == TaskMetrics(display_name="A", unit_count=0)


def test_missing_metadata_database_yields_placeholder(tmp_path: Path) -> None:
    lookup = SqliteMetadataLookup(tmp_path / "am_metadata.sqlite")

    assert lookup.lookup("A") is None
