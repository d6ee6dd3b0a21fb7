from __future__ import annotations

from pathlib import Path

import allure
import pytest

from artist_runner.engine.handoff import HandoffError, HandoffFile

pytestmark = [
    allure.epic("Session Control"),
    allure.feature("Worker Handoff File"),
]


def test_write_replaces_previous_content(tmp_path: Path) -> None:
    handoff = HandoffFile(tmp_path / "AppleMusicDecrypt" / "artists.txt")

    handoff.write("111")
    handoff.write("222")

    assert handoff.path.read_text("utf-8") == "222"
    assert not (handoff.path.parent / ".artists.txt.tmp").exists()


def test_clear_leaves_empty_file(tmp_path: Path) -> None:
    handoff = HandoffFile(tmp_path / "artists.txt")
    handoff.write("111")

    handoff.clear()

    assert handoff.path.exists()
    assert handoff.read() == ""


def test_read_missing_file_is_empty(tmp_path: Path) -> None:
    assert HandoffFile(tmp_path / "artists.txt").read() == ""


def test_unwritable_location_raises_handoff_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", "utf-8")

    with pytest.raises(HandoffError, match="Cannot write handoff file"):
        HandoffFile(blocker / "artists.txt").write("111")
