"""Pipeline executor that drives one claimed entry from processing to a terminal state."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Final, TypeVar, cast

import structlog

from merge_coordinator.domain import (
    EntryError,
    EntryStatus,
    ErrorKind,
    MergeStrategy,
    ProcessingLease,
    QueueEntry,
    clip_text,
)
from merge_coordinator.integration_plane.collaborators import (
    ChangeReview,
    IntegrationOutcome,
    PushOutcome,
    RebaseOutcome,
    SuiteOutcome,
    VerificationRunner,
    VersionControl,
)
from merge_coordinator.observability.logging import correlation_scope
from merge_coordinator.persistence import QueueStore, QueueStoreError

T = TypeVar("T")

STEP_PREPARE: Final[str] = "prepare"
STEP_REBASE: Final[str] = "rebase"
STEP_TEST: Final[str] = "test"
STEP_PUSH: Final[str] = "push"
STEP_MERGE: Final[str] = "merge"
STEP_CLEANUP: Final[str] = "cleanup"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PipelinePolicy:
    """Per-project knobs the executor consults; everything else is fixed."""

    default_strategy: MergeStrategy = MergeStrategy.SQUASH
    project_strategies: Mapping[str, MergeStrategy] = field(default_factory=dict)
    delete_branch_after_merge: bool = True
    project_delete_branch: Mapping[str, bool] = field(default_factory=dict)

    def strategy_for(self, entry: QueueEntry) -> MergeStrategy:
        if entry.merge_strategy is not None:
            return entry.merge_strategy
        return self.project_strategies.get(entry.project, self.default_strategy)

    def should_delete_branch(self, project: str) -> bool:
        return self.project_delete_branch.get(project, self.delete_branch_after_merge)


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    entry_id: str
    status: EntryStatus
    error: EntryError | None = None
    steps: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is EntryStatus.COMPLETED

    def to_dict(self) -> dict[str, object]:
        return {
            "entry_id": self.entry_id,
            "status": self.status.value,
            "error": self.error.to_dict() if self.error is not None else None,
            "steps": list(self.steps),
        }


class PipelineExecutor:
    """
    Runs prepare, rebase, test, push, merge for the lease holder.

    Each step refreshes the heartbeat first. Every exit path releases the lease.
    Collaborator exceptions fail the entry with ``execution-error``; queue store
    errors propagate to the caller.
    """

    def __init__(
        self,
        store: QueueStore,
        version_control: VersionControl,
        verifier: VerificationRunner,
        review: ChangeReview,
        *,
        policy: PipelinePolicy | None = None,
    ) -> None:
        self._store = store
        self._vcs = version_control
        self._verifier = verifier
        self._review = review
        self._policy = policy or PipelinePolicy()

    @property
    def policy(self) -> PipelinePolicy:
        return self._policy

    async def execute(self, lease: ProcessingLease) -> PipelineOutcome:
        entry_id = lease.entry_id
        steps: list[str] = []
        with correlation_scope(entry_id=entry_id):
            try:
                entry = self._store.get(entry_id)
                return await self._run(entry, steps)
            except QueueStoreError:
                raise
            except Exception as exc:
                step = steps[-1] if steps else STEP_PREPARE
                logger.exception(
                    "merge_queue_step_raised",
                    entry_id=entry_id,
                    step=step,
                    error_type=type(exc).__name__,
                )
                return self.fail_with_execution_error(entry_id, exc, step=step, steps=steps)
            finally:
                self._store.release(entry_id)

    def fail_with_execution_error(
        self,
        entry_id: str,
        exc: BaseException,
        *,
        step: str | None = None,
        steps: list[str] | tuple[str, ...] = (),
    ) -> PipelineOutcome:
        """Move an active entry to ``failed(execution-error)``; terminal entries are left alone."""
        current = self._store.get(entry_id)
        if not current.is_active:
            return PipelineOutcome(entry_id, current.status, current.error, tuple(steps))
        prefix = f"{step} step raised" if step else "pipeline raised"
        error = EntryError(
            kind=ErrorKind.EXECUTION_ERROR,
            message=clip_text(f"{prefix} {type(exc).__name__}: {exc}"),
        )
        return self._finish(entry_id, EntryStatus.FAILED, error, steps)

    async def _run(self, entry: QueueEntry, steps: list[str]) -> PipelineOutcome:
        entry_id = entry.entry_id
        project = entry.project

        await self._begin(entry_id, STEP_PREPARE, steps)
        await self._call(self._vcs.prepare, project)
        onto_ref = cast(str, await self._call(self._vcs.fetch_trunk, project))

        self._store.transition(entry_id, EntryStatus.REBASING)
        await self._begin(entry_id, STEP_REBASE, steps)
        rebase = cast(
            RebaseOutcome,
            await self._call(self._vcs.rebase, project, entry.branch_ref, onto_ref),
        )
        if not rebase.ok:
            error = EntryError(
                kind=ErrorKind.CONFLICT,
                message=f"rebase of {entry.branch_ref} onto {onto_ref} stopped on conflicts",
                details=tuple(clip_text(path) for path in rebase.conflicting_files),
            )
            return self._finish(entry_id, EntryStatus.BLOCKED, error, steps)

        self._store.transition(entry_id, EntryStatus.TESTING)
        await self._begin(entry_id, STEP_TEST, steps)
        suite = cast(
            SuiteOutcome,
            await self._call(self._verifier.run_suite, project, entry.branch_ref),
        )
        if not suite.passed:
            count = len(suite.failing_tests)
            error = EntryError(
                kind=ErrorKind.TEST_FAILURE,
                message=f"verification failed ({count} failing)" if count else "verification failed",
                details=tuple(clip_text(test) for test in suite.failing_tests),
            )
            return self._finish(entry_id, EntryStatus.FAILED, error, steps)

        self._store.transition(entry_id, EntryStatus.MERGING)
        await self._begin(entry_id, STEP_PUSH, steps)
        push = cast(
            PushOutcome,
            await self._call(
                self._vcs.push_force_with_lease, project, entry.branch_ref, rebase.remote_head
            ),
        )
        if not push.ok:
            if push.rejected_because_remote_moved:
                message = f"remote {entry.branch_ref} moved since it was rebased"
            else:
                message = f"push of {entry.branch_ref} was rejected"
            error = EntryError(
                kind=ErrorKind.MERGE_REJECTED,
                message=message,
                details=(clip_text(push.message),) if push.message.strip() else (),
            )
            return self._finish(entry_id, EntryStatus.FAILED, error, steps)

        strategy = self._policy.strategy_for(entry)
        await self._begin(entry_id, STEP_MERGE, steps)
        integration = cast(
            IntegrationOutcome,
            await self._call(self._review.request_integration, entry.change_request_ref, strategy),
        )
        if not integration.merged:
            reason = (integration.blocked_reason or "").strip() or "integration refused"
            error = EntryError(
                kind=ErrorKind.MERGE_BLOCKED,
                message=f"{entry.change_request_ref} could not be merged with {strategy.value}",
                details=(clip_text(reason),),
            )
            return self._finish(entry_id, EntryStatus.BLOCKED, error, steps)

        if self._policy.should_delete_branch(project):
            await self._begin(entry_id, STEP_CLEANUP, steps)
            try:
                await self._call(self._vcs.delete_branch, project, entry.branch_ref)
            except Exception as exc:
                logger.warning(
                    "merge_queue_branch_delete_failed",
                    entry_id=entry_id,
                    branch_ref=entry.branch_ref,
                    error=str(exc),
                )

        return self._finish(entry_id, EntryStatus.COMPLETED, None, steps)

    async def _begin(self, entry_id: str, step: str, steps: list[str]) -> None:
        self._store.heartbeat(entry_id)
        steps.append(step)
        logger.info("merge_queue_step_started", entry_id=entry_id, step=step)

    def _finish(
        self,
        entry_id: str,
        status: EntryStatus,
        error: EntryError | None,
        steps: list[str] | tuple[str, ...],
    ) -> PipelineOutcome:
        finished = self._store.transition(entry_id, status, error)
        logger.info(
            "merge_queue_entry_finished",
            entry_id=entry_id,
            status=finished.status.value,
            error_kind=error.kind.value if error is not None else None,
            steps=list(steps),
        )
        return PipelineOutcome(
            entry_id=entry_id,
            status=finished.status,
            error=finished.error,
            steps=tuple(steps),
        )

    async def _call(self, method: Callable[..., T | Awaitable[T]], *args: object) -> object:
        if inspect.iscoroutinefunction(method):
            return await method(*args)
        result = await asyncio.to_thread(method, *args)
        return await _maybe_await(result)


async def _maybe_await(value: object) -> object:
    if inspect.isawaitable(value):
        return await value
    return value


__all__ = [
    "STEP_CLEANUP",
    "STEP_MERGE",
    "STEP_PREPARE",
    "STEP_PUSH",
    "STEP_REBASE",
    "STEP_TEST",
    "PipelineExecutor",
    "PipelineOutcome",
    "PipelinePolicy",
]
