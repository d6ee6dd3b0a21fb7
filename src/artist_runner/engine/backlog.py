"""Backlog store: candidate task ids minus durable completion records."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from sqlalchemy import column, literal_column, select, table
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col
from sqlmodel import select as sqlmodel_select

from artist_runner.engine.models import TaskMetrics
from artist_runner.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_readonly_sqlite_engine,
    build_sqlite_engine,
    to_iso,
    utc_now,
)
from artist_runner.storage.sqlmodel_models import ProcessedArtist

logger = logging.getLogger(__name__)


class BacklogError(RuntimeError):
    """Base class for backlog store failures."""


class SourceUnavailable(BacklogError):
    """Candidate id source cannot be read."""


class ProgressUnavailable(BacklogError):
    """Progress store cannot be opened or created."""


class PersistenceError(BacklogError):
    """Completion record could not be written."""


class CandidateSource(Protocol):
    """Enumerates every known task id in a stable order."""

    def candidate_ids(self) -> list[str]:
        """Return candidate ids; raise ``SourceUnavailable`` when unreadable."""


class MetadataLookup(Protocol):
    def lookup(self, task_id: str) -> TaskMetrics | None:
        """Return metrics for ``task_id`` or ``None`` when unknown."""


class SqliteCandidateSource:
    """Reads distinct non-null ids from one column of an existing database."""

    def __init__(
        self,
        db_path: Path,
        *,
        table_name: str = "artists",
        column_name: str = "id",
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.table_name = table_name
        self.column_name = column_name
        self.busy_timeout_ms = busy_timeout_ms

    def candidate_ids(self) -> list[str]:
        if not self.db_path.is_file():
            raise SourceUnavailable(f"Candidate source database not found: {self.db_path}")
        id_column = column(self.column_name)
        query = (
            select(id_column)
            .select_from(table(self.table_name))
            .where(id_column.is_not(None))
            .order_by(literal_column("rowid"))
        )
        engine = build_readonly_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.busy_timeout_ms,
        )
        try:
            with engine.connect() as connection:
                values = connection.execute(query).scalars().all()
        except (SQLAlchemyError, sqlite3.Error) as error:
            raise SourceUnavailable(
                f"Cannot read candidate ids from {self.db_path} "
                f"({self.table_name}.{self.column_name}): {error}",
            ) from error
        finally:
            engine.dispose()
        return _dedupe(str(value) for value in values)


class TextFileCandidateSource:
    """Reads one id per line from a plain text list."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def candidate_ids(self) -> list[str]:
        try:
            text = self.path.read_text("utf-8-sig")
        except OSError as error:
            raise SourceUnavailable(f"Cannot read candidate list {self.path}: {error}") from error
        return _dedupe(text.splitlines())


class SqliteMetadataLookup:
    """Display name and unit count from the metadata database."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        table_name: str = "artists",
        id_column: str = "id",
        name_column: str = "name",
        units_column: str = "track_count",
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.table_name = table_name
        self.id_column = id_column
        self.name_column = name_column
        self.units_column = units_column
        self.busy_timeout_ms = busy_timeout_ms

    def lookup(self, task_id: str) -> TaskMetrics | None:
        if not self.db_path.is_file():
            return None
        query = (
            select(column(self.name_column), column(self.units_column))
            .select_from(table(self.table_name))
            .where(column(self.id_column) == task_id)
            .limit(1)
        )
        engine = build_readonly_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.busy_timeout_ms,
        )
        try:
            with engine.connect() as connection:
                row = connection.execute(query).one_or_none()
        finally:
            engine.dispose()
        if row is None:
            return None
        name, units = row
        return TaskMetrics(
            display_name=str(name) if name else task_id,
            unit_count=int(units or 0),
        )


class BacklogStore:
    """Computes pending tasks and owns the durable completion records."""

    def __init__(
        self,
        *,
        source: CandidateSource,
        progress_db_path: Path,
        metadata: MetadataLookup | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.source = source
        self.progress_db_path = progress_db_path
        self.metadata = metadata
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None

    def close(self) -> None:
        """Release the progress store engine."""

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def pending_tasks(self) -> list[str]:
        """Candidate ids not yet completed, in candidate order."""

        candidates = self.source.candidate_ids()
        completed = set(self.completed_ids())
        return [task_id for task_id in candidates if task_id not in completed]

    def completed_ids(self) -> list[str]:
        engine = self._progress_engine()
        try:
            with Session(engine) as session:
                rows = session.exec(
                    sqlmodel_select(ProcessedArtist.id).order_by(
                        col(ProcessedArtist.processed_at).asc(),
                        col(ProcessedArtist.id).asc(),
                    ),
                ).all()
        except SQLAlchemyError as error:
            raise ProgressUnavailable(
                f"Cannot read progress store {self.progress_db_path}: {error}",
            ) from error
        return list(rows)

    def mark_complete(self, task_id: str) -> bool:
        """Record ``task_id`` as done; returns ``False`` if it already was."""

        try:
            engine = self._progress_engine()
        except ProgressUnavailable as error:
            raise PersistenceError(str(error)) from error
        statement = (
            sqlite_insert(ProcessedArtist)
            .values(id=task_id, processed_at=to_iso(utc_now()))
            .on_conflict_do_nothing(index_elements=["id"])
        )
        try:
            with engine.begin() as connection:
                result = connection.execute(statement)
        except SQLAlchemyError as error:
            raise PersistenceError(
                f"Cannot record completion of {task_id!r} in {self.progress_db_path}: {error}",
            ) from error
        inserted = result.rowcount == 1
        if not inserted:
            logger.debug("Task %s was already marked complete", task_id)
        return inserted

    def task_metrics(self, task_id: str) -> TaskMetrics:
        """Best-effort enrichment; failures degrade to a placeholder."""

        placeholder = TaskMetrics(display_name=task_id, unit_count=0)
        if self.metadata is None:
            return placeholder
        try:
            metrics = self.metadata.lookup(task_id)
        except Exception as error:  # noqa: BLE001
            logger.warning("Metadata lookup failed for %s: %s", task_id, error)
            return placeholder
        return metrics or placeholder

    def _progress_engine(self) -> Engine:
        if self._engine is not None:
            return self._engine
        engine = build_sqlite_engine(
            db_path=self.progress_db_path,
            busy_timeout_ms=self.busy_timeout_ms,
        )
        try:
            SQLModel.metadata.create_all(engine, tables=[ProcessedArtist.__table__])
        except SQLAlchemyError as error:
            engine.dispose()
            raise ProgressUnavailable(
                f"Cannot open or create progress store {self.progress_db_path}: {error}",
            ) from error
        self._engine = engine
        return engine


def _dedupe(values) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        ordered.append(normalized)
    return ordered
