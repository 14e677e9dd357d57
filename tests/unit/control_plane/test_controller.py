"""Unit tests for the operator-facing coordinator facade."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

from merge_coordinator.config import default_config, merge_config
from merge_coordinator.control_plane import CoordinatorError, MergeCoordinator
from merge_coordinator.domain import EntryError, EntryStatus, ErrorKind, MergeStrategy, Priority
from merge_coordinator.integration_plane import (
    CommandVerificationRunner,
    GhChangeReview,
    GitVersionControl,
    IntegrationOutcome,
    PushOutcome,
    RebaseOutcome,
    SuiteOutcome,
)
from merge_coordinator.persistence import DuplicateEntry

if TYPE_CHECKING:
    from pathlib import Path


class NullVersionControl:
    def prepare(self, project: str) -> None:
        return None

    def fetch_trunk(self, project: str) -> str:
        return "origin/main"

    def rebase(self, project: str, branch_ref: str, onto_ref: str) -> RebaseOutcome:
        return RebaseOutcome(ok=True)

    def push_force_with_lease(
        self, project: str, branch_ref: str, expected_remote_head: str | None
    ) -> PushOutcome:
        return PushOutcome(ok=True)

    def delete_branch(self, project: str, branch_ref: str) -> None:
        return None


class PassingVerifier:
    def run_suite(self, project: str, branch_ref: str) -> SuiteOutcome:
        return SuiteOutcome(passed=True)


class MergingReview:
    def request_integration(
        self, change_request_ref: str, strategy: MergeStrategy
    ) -> IntegrationOutcome:
        return IntegrationOutcome(merged=True)


def _config(tmp_path: Path, **projects: dict[str, Any]) -> dict[str, Any]:
    return merge_config(
        default_config(),
        {
            "queue": {"state_file": str(tmp_path / "queue.json"), "stale_after_seconds": 60},
            "projects": projects or {"api": {"repo_path": str(tmp_path / "api")}},
        },
    )


def _coordinator(tmp_path: Path, **projects: dict[str, Any]) -> MergeCoordinator:
    return MergeCoordinator.from_config(
        _config(tmp_path, **projects),
        version_control=NullVersionControl(),
        verifier=PassingVerifier(),
        review=MergingReview(),
    )


def test_enqueue_generates_ids_and_normalizes_inputs(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)

    entry = coordinator.enqueue(
        "api",
        "agent/login",
        "42",
        priority="HIGH",
        files_changed=["./src/a.py"],
        merge_strategy="rebase",
    )

    assert entry.entry_id.startswith("api-")
    assert len(entry.entry_id) == len("api-") + 12
    assert entry.priority is Priority.HIGH
    assert entry.files_changed == ("src/a.py",)
    assert entry.merge_strategy is MergeStrategy.REBASE
    assert coordinator.store.get(entry.entry_id) == entry


def test_enqueue_rejects_unknown_projects_and_duplicates(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.enqueue("api", "agent/a", "1", entry_id="fixed")

    with pytest.raises(CoordinatorError, match="unknown project 'web'"):
        coordinator.enqueue("web", "agent/a", "1")
    with pytest.raises(DuplicateEntry):
        coordinator.enqueue("api", "agent/b", "2", entry_id="fixed")


def test_detect_files_requires_the_git_adapter(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)

    with pytest.raises(CoordinatorError, match="git adapter"):
        coordinator.enqueue("api", "agent/a", "1", detect_files=True)


def test_status_groups_entries_and_reports_overlaps(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.enqueue("api", "agent/a", "1", entry_id="a", files_changed=["x.py"])
    coordinator.enqueue("api", "agent/b", "2", entry_id="b", files_changed=["x.py", "y.py"])
    coordinator.enqueue("api", "agent/c", "3", entry_id="c")
    store = coordinator.store
    store.claim("c")
    store.transition("c", EntryStatus.BLOCKED, EntryError(kind=ErrorKind.CONFLICT, message="c"))
    store.release("c")

    view = coordinator.status()

    assert [entry.entry_id for entry in view.queued] == ["a", "b"]
    assert view.active is None
    assert view.lease is None
    assert [entry.entry_id for entry in view.blocked] == ["c"]
    assert len(view.conflict_warnings) == 1
    assert view.conflict_warnings[0].overlapping_files == ("x.py",)
    payload = view.to_dict()
    assert payload["lease_stale"] is False
    assert [item["id"] for item in payload["failed"]] == ["c"]  # type: ignore[index]


def test_status_flags_stale_lease(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.enqueue("api", "agent/a", "1", entry_id="a")
    lease = coordinator.store.claim("a")
    old = lease.heartbeat_at - timedelta(minutes=5)
    coordinator.store.heartbeat("a", now=old)

    view = coordinator.status()

    assert view.active is not None
    assert view.active.entry_id == "a"
    assert view.lease_stale


@pytest.mark.asyncio
async def test_process_then_retry_and_remove(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.enqueue("api", "agent/a", "1", entry_id="a")

    report = await coordinator.process()

    assert report.completed == ("a",)
    with pytest.raises(Exception, match="only failed or blocked"):
        coordinator.retry("a")
    with pytest.raises(Exception, match="only failed or blocked"):
        coordinator.remove("a")


def test_from_config_builds_real_adapters(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        api={"repo_path": str(tmp_path / "api"), "merge_strategy": "merge"},
        web={"repo_path": str(tmp_path / "web"), "delete_branch_after_merge": False},
    )
    config["review"]["token_env"] = "MERGEQ_TEST_TOKEN"

    coordinator = MergeCoordinator.from_config(config, environ={"MERGEQ_TEST_TOKEN": " t0k "})

    executor = coordinator.scheduler._executor  # noqa: SLF001
    assert isinstance(executor._vcs, GitVersionControl)  # noqa: SLF001
    assert isinstance(executor._verifier, CommandVerificationRunner)  # noqa: SLF001
    assert isinstance(executor._review, GhChangeReview)  # noqa: SLF001
    assert executor._review._env_overrides == {"GH_TOKEN": "t0k"}  # noqa: SLF001
    assert executor.policy.project_strategies == {"api": MergeStrategy.MERGE}
    assert executor.policy.should_delete_branch("api")
    assert not executor.policy.should_delete_branch("web")
