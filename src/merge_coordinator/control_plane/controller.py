"""Coordinator facade wiring the store, pipeline, scheduler and adapters from config."""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from merge_coordinator.control_plane.scheduler import ProcessReport, Scheduler
from merge_coordinator.domain import (
    ConflictWarning,
    EntryStatus,
    MergeStrategy,
    Priority,
    ProcessingLease,
    QueueEntry,
    parse_priority,
    utc_now,
)
from merge_coordinator.integration_plane import (
    ChangeReview,
    CommandVerificationRunner,
    GhChangeReview,
    GitEngine,
    GitVersionControl,
    HeartbeatMonitor,
    PipelineExecutor,
    PipelinePolicy,
    VerificationRunner,
    VersionControl,
    analyze_conflicts,
)
from merge_coordinator.persistence import QueueStore


class CoordinatorError(RuntimeError):
    """Raised for operator requests the coordinator refuses outside the store's rules."""


@dataclass(frozen=True, slots=True)
class StatusView:
    """Read-only snapshot for operators."""

    queued: tuple[QueueEntry, ...]
    active: QueueEntry | None
    lease: ProcessingLease | None
    lease_stale: bool
    failed: tuple[QueueEntry, ...]
    completed: tuple[QueueEntry, ...]
    conflict_warnings: tuple[ConflictWarning, ...]

    @property
    def blocked(self) -> tuple[QueueEntry, ...]:
        return tuple(entry for entry in self.failed if entry.status is EntryStatus.BLOCKED)

    def to_dict(self) -> dict[str, object]:
        return {
            "queued": [entry.to_dict() for entry in self.queued],
            "active": self.active.to_dict() if self.active is not None else None,
            "lease": self.lease.to_dict() if self.lease is not None else None,
            "lease_stale": self.lease_stale,
            "failed": [entry.to_dict() for entry in self.failed],
            "completed": [entry.to_dict() for entry in self.completed],
            "conflict_warnings": [warning.to_dict() for warning in self.conflict_warnings],
        }


class MergeCoordinator:
    """Operator-facing entry point: enqueue, status, process, retry, remove."""

    def __init__(
        self,
        store: QueueStore,
        executor: PipelineExecutor,
        monitor: HeartbeatMonitor,
        *,
        known_projects: Iterable[str] | None = None,
        file_detector: Callable[[str, str], tuple[str, ...]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._executor = executor
        self._monitor = monitor
        self._scheduler = Scheduler(store, executor, monitor)
        self._known_projects = frozenset(known_projects) if known_projects is not None else None
        self._file_detector = file_detector
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
        version_control: VersionControl | None = None,
        verifier: VerificationRunner | None = None,
        review: ChangeReview | None = None,
    ) -> MergeCoordinator:
        """Build the coordinator from a validated config; collaborators may be injected."""
        env = os.environ if environ is None else environ
        queue_cfg = config["queue"]
        git_cfg = config["git"]
        verification_cfg = config["verification"]
        review_cfg = config["review"]
        projects: Mapping[str, Mapping[str, Any]] = config.get("projects", {})

        store = QueueStore(Path(queue_cfg["state_file"]))
        monitor = HeartbeatMonitor(
            store, stale_after=timedelta(seconds=int(queue_cfg["stale_after_seconds"]))
        )

        git_vcs: GitVersionControl | None = None
        if version_control is None:
            engines = {
                name: GitEngine(
                    project["repo_path"],
                    trunk_branch=project.get("trunk_branch", git_cfg["trunk_branch"]),
                    remote=project.get("remote", git_cfg["remote"]),
                )
                for name, project in projects.items()
            }
            git_vcs = GitVersionControl(engines)
            version_control = git_vcs

        if verifier is None:
            verifier = CommandVerificationRunner(
                {name: project["repo_path"] for name, project in projects.items()},
                default_commands=verification_cfg["commands"],
                project_commands={
                    name: project["verification_commands"]
                    for name, project in projects.items()
                    if "verification_commands" in project
                },
                timeout_seconds=float(verification_cfg["timeout_seconds"]),
            )

        if review is None:
            review_env: dict[str, str] = {}
            token_env = review_cfg.get("token_env")
            if token_env and env.get(token_env, "").strip():
                review_env["GH_TOKEN"] = env[token_env].strip()
            review = GhChangeReview(
                gh_binary=review_cfg["gh_binary"],
                timeout_seconds=float(review_cfg["timeout_seconds"]),
                env_overrides=review_env,
            )

        policy = PipelinePolicy(
            default_strategy=MergeStrategy(review_cfg["default_strategy"]),
            project_strategies={
                name: MergeStrategy(project["merge_strategy"])
                for name, project in projects.items()
                if "merge_strategy" in project
            },
            delete_branch_after_merge=bool(git_cfg["delete_branch_after_merge"]),
            project_delete_branch={
                name: bool(project["delete_branch_after_merge"])
                for name, project in projects.items()
                if "delete_branch_after_merge" in project
            },
        )
        executor = PipelineExecutor(store, version_control, verifier, review, policy=policy)
        return cls(
            store,
            executor,
            monitor,
            known_projects=projects.keys() if projects else None,
            file_detector=git_vcs.changed_files if git_vcs is not None else None,
        )

    @property
    def store(self) -> QueueStore:
        return self._store

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def enqueue(
        self,
        project: str,
        branch_ref: str,
        change_request_ref: str,
        *,
        entry_id: str | None = None,
        priority: Priority | str = Priority.NORMAL,
        files_changed: Iterable[str] = (),
        merge_strategy: MergeStrategy | str | None = None,
        detect_files: bool = False,
    ) -> QueueEntry:
        if self._known_projects is not None and project not in self._known_projects:
            known = ", ".join(sorted(self._known_projects))
            raise CoordinatorError(f"unknown project {project!r}; configured: {known}")

        files = tuple(files_changed)
        if detect_files:
            if self._file_detector is None:
                raise CoordinatorError("changed-file detection needs the git adapter")
            files = (*files, *self._file_detector(project, branch_ref))

        entry = QueueEntry(
            entry_id=entry_id or _new_entry_id(project),
            project=project,
            branch_ref=branch_ref,
            change_request_ref=change_request_ref,
            priority=parse_priority(priority),
            queued_at=self._clock(),
            files_changed=files,
            merge_strategy=merge_strategy,  # type: ignore[arg-type]
        )
        return self._store.enqueue(entry)

    def status(self) -> StatusView:
        entries = self._store.list()
        lease = self._store.lease()
        queued = tuple(entry for entry in entries if entry.status is EntryStatus.QUEUED)
        return StatusView(
            queued=queued,
            active=next((entry for entry in entries if entry.is_active), None),
            lease=lease,
            lease_stale=lease is not None and self._monitor.is_stale(lease, self._clock()),
            failed=tuple(
                entry
                for entry in entries
                if entry.status in {EntryStatus.FAILED, EntryStatus.BLOCKED}
            ),
            completed=tuple(entry for entry in entries if entry.status is EntryStatus.COMPLETED),
            conflict_warnings=analyze_conflicts(queued),
        )

    async def process(self) -> ProcessReport:
        return await self._scheduler.run()

    def request_stop(self) -> None:
        self._scheduler.request_stop()

    def retry(self, entry_id: str) -> QueueEntry:
        return self._store.retry(entry_id)

    def remove(self, entry_id: str) -> QueueEntry:
        return self._store.remove(entry_id)


def _new_entry_id(project: str) -> str:
    return f"{project}-{uuid.uuid4().hex[:12]}"


__all__ = ["CoordinatorError", "MergeCoordinator", "StatusView"]
