"""Input handoff file read by the worker process."""

from __future__ import annotations

import os
from pathlib import Path


class HandoffError(RuntimeError):
    """Handoff file cannot be written."""


class HandoffFile:
    """Holds exactly one task id (or nothing) for the next worker run."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, task_id: str) -> None:
        self._replace(task_id)

    def clear(self) -> None:
        self._replace("")

    def read(self) -> str:
        try:
            return self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return ""

    def _replace(self, content: str) -> None:
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(content, "utf-8")
            os.replace(temp_path, self.path)
        except OSError as error:
            raise HandoffError(f"Cannot write handoff file {self.path}: {error}") from error
