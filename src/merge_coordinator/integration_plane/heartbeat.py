"""Stale-lease detection and reclamation."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

import structlog

from merge_coordinator.constants import DEFAULT_STALE_AFTER_SECONDS
from merge_coordinator.domain import (
    EntryError,
    EntryStatus,
    ErrorKind,
    ProcessingLease,
    QueueEntry,
    utc_now,
)
from merge_coordinator.persistence import QueueStore

DEFAULT_STALE_AFTER: Final[timedelta] = timedelta(seconds=DEFAULT_STALE_AFTER_SECONDS)

logger = structlog.get_logger(__name__)


class HeartbeatMonitor:
    """
    Reclaims the processing lease when its holder stopped heartbeating.

    Assumes a single coordinator process at a time; this is crash recovery, not
    a distributed lock.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if stale_after <= timedelta(0):
            raise ValueError("stale_after must be positive")
        self._store = store
        self._stale_after = stale_after
        self._clock = clock

    @property
    def stale_after(self) -> timedelta:
        return self._stale_after

    def is_stale(self, lease: ProcessingLease, now: datetime | None = None) -> bool:
        current = now if now is not None else self._clock()
        return current - lease.heartbeat_at > self._stale_after

    def reclaim_if_stale(self, now: datetime | None = None) -> QueueEntry | None:
        """Return the entry failed as stale, or ``None`` when nothing was reclaimed."""
        current = now if now is not None else self._clock()
        lease = self._store.lease()
        if lease is None:
            holder = self._store.active_entry()
            if holder is None:
                return None
            # Active entry without a lease can never heartbeat again.
            return self._fail_stale(holder, None, current)

        entry = self._store.get(lease.entry_id)
        if not entry.is_active:
            # Holder already reached a terminal state; only the lease survived.
            self._store.release(lease.entry_id)
            logger.warning(
                "merge_queue_orphan_lease_released",
                entry_id=lease.entry_id,
                entry_status=entry.status.value,
            )
            return None

        if not self.is_stale(lease, current):
            return None
        return self._fail_stale(entry, lease, current)

    def _fail_stale(
        self, entry: QueueEntry, lease: ProcessingLease | None, now: datetime
    ) -> QueueEntry:
        threshold = self._stale_after.total_seconds()
        if lease is None:
            age = None
            error = EntryError(
                kind=ErrorKind.STALE,
                message=f"entry is {entry.status.value} without a processing lease",
            )
        else:
            age = lease.age(now)
            error = EntryError(
                kind=ErrorKind.STALE,
                message=f"no heartbeat for {age:.0f}s (threshold {threshold:.0f}s)",
                details=(f"last_heartbeat={lease.heartbeat_at.isoformat()}",),
            )
        failed = self._store.transition(entry.entry_id, EntryStatus.FAILED, error, now=now)
        self._store.release(entry.entry_id)
        logger.warning(
            "merge_queue_stale_lease_reclaimed",
            entry_id=entry.entry_id,
            last_status=entry.status.value,
            heartbeat_age_seconds=round(age, 3) if age is not None else None,
        )
        return failed


__all__ = ["DEFAULT_STALE_AFTER", "HeartbeatMonitor"]
