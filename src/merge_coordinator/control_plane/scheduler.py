"""Serial scheduler that drains the merge queue one claimed entry at a time."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from merge_coordinator.domain import ConflictWarning, EntryStatus, QueueEntry
from merge_coordinator.integration_plane import (
    HeartbeatMonitor,
    PipelineExecutor,
    PipelineOutcome,
    analyze_conflicts,
)
from merge_coordinator.persistence import (
    AlreadyProcessing,
    QueueStore,
    QueueStoreError,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessReport:
    """Summary of one ``Scheduler.run`` invocation."""

    outcomes: tuple[PipelineOutcome, ...] = ()
    reclaimed: tuple[QueueEntry, ...] = ()
    busy: bool = False
    stopped: bool = False
    conflict_warnings: tuple[ConflictWarning, ...] = ()

    @property
    def completed(self) -> tuple[str, ...]:
        return tuple(item.entry_id for item in self.outcomes if item.succeeded)

    @property
    def unsuccessful(self) -> tuple[str, ...]:
        return tuple(item.entry_id for item in self.outcomes if not item.succeeded)

    def to_dict(self) -> dict[str, object]:
        return {
            "outcomes": [item.to_dict() for item in self.outcomes],
            "reclaimed": [entry.entry_id for entry in self.reclaimed],
            "busy": self.busy,
            "stopped": self.stopped,
            "conflict_warnings": [warning.to_dict() for warning in self.conflict_warnings],
        }


class Scheduler:
    """
    Claims the head of the queue, hands it to the executor, repeats.

    Ordering is recomputed at every claim. Failed and blocked outcomes never halt
    the loop and are never retried here. Queue store errors are fatal.
    """

    def __init__(
        self,
        store: QueueStore,
        executor: PipelineExecutor,
        monitor: HeartbeatMonitor,
    ) -> None:
        self._store = store
        self._executor = executor
        self._monitor = monitor
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Exit after the in-flight entry finishes; never interrupts a step."""
        self._stop_requested = True

    async def run(self) -> ProcessReport:
        self._stop_requested = False
        outcomes: list[PipelineOutcome] = []
        reclaimed: list[QueueEntry] = []
        busy = False

        stale = self._monitor.reclaim_if_stale()
        if stale is not None:
            reclaimed.append(stale)
        warnings = self._analyze()

        while not self._stop_requested:
            queued = self._store.list(EntryStatus.QUEUED)
            if not queued:
                break
            head = queued[0]

            try:
                lease = self._store.claim(head.entry_id)
            except AlreadyProcessing as exc:
                stale = self._monitor.reclaim_if_stale()
                if stale is None:
                    logger.info("merge_queue_busy", holder_id=exc.holder_id)
                    busy = True
                    break
                reclaimed.append(stale)
                try:
                    lease = self._store.claim(head.entry_id)
                except AlreadyProcessing as retry_exc:
                    logger.info("merge_queue_busy", holder_id=retry_exc.holder_id)
                    busy = True
                    break

            try:
                outcome = await self._executor.execute(lease)
            except QueueStoreError:
                raise
            except Exception as exc:
                logger.exception(
                    "merge_queue_executor_raised",
                    entry_id=lease.entry_id,
                    error_type=type(exc).__name__,
                )
                outcome = self._executor.fail_with_execution_error(lease.entry_id, exc)
                self._store.release(lease.entry_id)

            outcomes.append(outcome)
            if outcome.succeeded:
                warnings = self._analyze()

        stopped = self._stop_requested
        report = ProcessReport(
            outcomes=tuple(outcomes),
            reclaimed=tuple(reclaimed),
            busy=busy,
            stopped=stopped,
            conflict_warnings=warnings,
        )
        logger.info(
            "merge_queue_run_finished",
            processed=len(outcomes),
            completed=len(report.completed),
            unsuccessful=len(report.unsuccessful),
            reclaimed=len(reclaimed),
            busy=busy,
            stopped=stopped,
        )
        return report

    def _analyze(self) -> tuple[ConflictWarning, ...]:
        warnings = analyze_conflicts(self._store.list(EntryStatus.QUEUED))
        for warning in warnings:
            logger.warning(
                "merge_queue_conflict_warning",
                entry_a=warning.entry_a,
                entry_b=warning.entry_b,
                project=warning.project,
                overlapping_files=list(warning.overlapping_files),
            )
        return warnings


__all__ = ["ProcessReport", "Scheduler"]
