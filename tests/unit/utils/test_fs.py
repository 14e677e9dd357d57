"""Unit tests for atomic state-file replacement."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from merge_coordinator.utils.fs import atomic_write_text, read_text_or_none

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_creates_parents_and_replaces(tmp_path: Path) -> None:
    target = tmp_path / "state" / "queue.json"

    atomic_write_text(target, "first")
    atomic_write_text(target, "second")

    assert target.read_text(encoding="utf-8") == "second"
    assert sorted(os.listdir(target.parent)) == ["queue.json"]


def test_failed_write_leaves_previous_content_and_no_temp_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "queue.json"
    atomic_write_text(target, "original")

    def broken_replace(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("merge_coordinator.utils.fs.os.replace", broken_replace)

    with pytest.raises(OSError, match="disk full"):
        atomic_write_text(target, "updated")

    assert target.read_text(encoding="utf-8") == "original"
    assert sorted(os.listdir(tmp_path)) == ["queue.json"]


def test_read_text_or_none(tmp_path: Path) -> None:
    assert read_text_or_none(tmp_path / "missing.json") is None
    (tmp_path / "present.json").write_text("{}", encoding="utf-8")
    assert read_text_or_none(tmp_path / "present.json") == "{}"
