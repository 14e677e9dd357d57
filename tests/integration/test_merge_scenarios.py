"""
merge-coordinator: end-to-end queue scenarios through the coordinator facade.

Purpose
- Drive enqueue -> process -> status with scripted collaborators and assert the
  persisted queue document after each scenario.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

from merge_coordinator.config import default_config, merge_config
from merge_coordinator.control_plane import MergeCoordinator
from merge_coordinator.domain import EntryStatus, ErrorKind, MergeStrategy, utc_now
from merge_coordinator.integration_plane import (
    IntegrationOutcome,
    PushOutcome,
    RebaseOutcome,
    SuiteOutcome,
)

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(slots=True)
class ScriptedGit:
    conflicts: dict[str, tuple[str, ...]] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def prepare(self, project: str) -> None:
        self.calls.append(("prepare", project))

    def fetch_trunk(self, project: str) -> str:
        return "origin/main"

    def rebase(self, project: str, branch_ref: str, onto_ref: str) -> RebaseOutcome:
        self.calls.append(("rebase", branch_ref))
        conflicting = self.conflicts.get(branch_ref, ())
        return RebaseOutcome(ok=not conflicting, conflicting_files=conflicting, remote_head="abc")

    def push_force_with_lease(
        self, project: str, branch_ref: str, expected_remote_head: str | None
    ) -> PushOutcome:
        self.calls.append(("push", branch_ref))
        return PushOutcome(ok=True)

    def delete_branch(self, project: str, branch_ref: str) -> None:
        self.calls.append(("delete", branch_ref))


@dataclass(slots=True)
class ScriptedSuite:
    failures: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def run_suite(self, project: str, branch_ref: str) -> SuiteOutcome:
        failing = self.failures.get(branch_ref, ())
        return SuiteOutcome(passed=not failing, failing_tests=failing)


@dataclass(slots=True)
class RecordingReview:
    merged: list[tuple[str, MergeStrategy]] = field(default_factory=list)

    def request_integration(
        self, change_request_ref: str, strategy: MergeStrategy
    ) -> IntegrationOutcome:
        self.merged.append((change_request_ref, strategy))
        return IntegrationOutcome(merged=True)


def _config(tmp_path: Path) -> dict[str, Any]:
    return merge_config(
        default_config(),
        {
            "queue": {"state_file": str(tmp_path / "queue.json"), "stale_after_seconds": 600},
            "projects": {"api": {"repo_path": str(tmp_path / "api")}},
        },
    )


def _coordinator(
    tmp_path: Path,
    *,
    git: ScriptedGit | None = None,
    suite: ScriptedSuite | None = None,
    review: RecordingReview | None = None,
) -> MergeCoordinator:
    return MergeCoordinator.from_config(
        _config(tmp_path),
        version_control=git or ScriptedGit(),
        verifier=suite or ScriptedSuite(),
        review=review or RecordingReview(),
    )


def _document(tmp_path: Path) -> dict[str, Any]:
    return json.loads((tmp_path / "queue.json").read_text(encoding="utf-8"))


@pytest.mark.integration
@pytest.mark.asyncio
async def test_critical_conflict_is_blocked_and_normal_entry_still_merges(tmp_path: Path) -> None:
    git = ScriptedGit(conflicts={"agent/x2": ("src/app.py",)})
    review = RecordingReview()
    coordinator = _coordinator(tmp_path, git=git, review=review)
    coordinator.enqueue("api", "agent/x1", "101", entry_id="x1", priority="normal")
    coordinator.enqueue("api", "agent/x2", "102", entry_id="x2", priority="critical")

    report = await coordinator.process()

    assert [branch for action, branch in git.calls if action == "rebase"] == [
        "agent/x2",
        "agent/x1",
    ]
    blocked = coordinator.store.get("x2")
    assert blocked.status is EntryStatus.BLOCKED
    assert blocked.error is not None
    assert blocked.error.kind is ErrorKind.CONFLICT
    assert blocked.error.details == ("src/app.py",)
    assert report.unsuccessful == ("x2",)
    assert report.completed == ("x1",)
    assert review.merged == [("101", MergeStrategy.SQUASH)]

    document = _document(tmp_path)
    assert [item["id"] for item in document["failed"]] == ["x2"]
    assert [item["id"] for item in document["completed"]] == ["x1"]
    assert document["queue"] == []
    assert document["lease"] is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_test_failure_records_failing_ids_and_releases_lease(tmp_path: Path) -> None:
    failing = ("tests/test_auth.py::test_login", "tests/test_auth.py::test_logout")
    coordinator = _coordinator(tmp_path, suite=ScriptedSuite(failures={"agent/x1": failing}))
    coordinator.enqueue("api", "agent/x1", "101", entry_id="x1")

    report = await coordinator.process()

    failed = coordinator.store.get("x1")
    assert failed.status is EntryStatus.FAILED
    assert failed.error is not None
    assert failed.error.kind is ErrorKind.TEST_FAILURE
    assert failed.error.details == failing
    assert coordinator.store.lease() is None
    assert coordinator.store.list(EntryStatus.QUEUED) == ()
    assert report.outcomes[0].steps == ("prepare", "rebase", "test")

    retried = coordinator.retry("x1")
    assert retried.status is EntryStatus.QUEUED
    assert retried.error is None

    rerun = await coordinator.process()

    again = coordinator.store.get("x1")
    assert rerun.unsuccessful == ("x1",)
    assert rerun.outcomes[0].steps == ("prepare", "rebase", "test")
    assert again.status is EntryStatus.FAILED
    assert again.error == failed.error
    assert again.attempts == failed.attempts + 1
    assert coordinator.store.lease() is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stale_lease_is_reclaimed_before_any_new_claim(tmp_path: Path) -> None:
    git = ScriptedGit()
    coordinator = _coordinator(tmp_path, git=git)
    coordinator.enqueue("api", "agent/x3", "103", entry_id="x3", priority="critical")
    coordinator.enqueue("api", "agent/x4", "104", entry_id="x4")
    coordinator.store.claim("x3", now=utc_now() - timedelta(minutes=15))

    status = coordinator.status()
    assert status.active is not None
    assert status.lease_stale

    report = await coordinator.process()

    assert [entry.entry_id for entry in report.reclaimed] == ["x3"]
    stale = coordinator.store.get("x3")
    assert stale.status is EntryStatus.FAILED
    assert stale.error is not None
    assert stale.error.kind is ErrorKind.STALE
    assert [branch for action, branch in git.calls if action == "rebase"] == ["agent/x4"]
    assert report.completed == ("x4",)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_fresh_lease_held_elsewhere_leaves_queue_untouched(tmp_path: Path) -> None:
    git = ScriptedGit()
    coordinator = _coordinator(tmp_path, git=git)
    coordinator.enqueue("api", "agent/a", "1", entry_id="a")
    coordinator.enqueue("api", "agent/b", "2", entry_id="b")
    coordinator.store.claim("a")

    report = await coordinator.process()

    assert report.busy
    assert git.calls == []
    assert coordinator.store.get("b").status is EntryStatus.QUEUED


@pytest.mark.integration
@pytest.mark.asyncio
async def test_overlapping_queue_entries_are_warned_and_state_survives_reload(
    tmp_path: Path,
) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.enqueue("api", "agent/a", "1", entry_id="a", files_changed=["src/x.py"])
    coordinator.enqueue("api", "agent/b", "2", entry_id="b", files_changed=["src/x.py"])

    reloaded = _coordinator(tmp_path)
    view = reloaded.status()

    assert [(w.entry_a, w.entry_b, w.overlapping_files) for w in view.conflict_warnings] == [
        ("a", "b", ("src/x.py",))
    ]

    report = await reloaded.process()
    assert report.completed == ("a", "b")
    assert reloaded.status().conflict_warnings == ()
