"""Durable single-document queue store with one exclusive processing lease."""

from __future__ import annotations

import fcntl
import json
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Final

import structlog

from merge_coordinator.constants import QUEUE_STATE_SCHEMA_VERSION
from merge_coordinator.domain import (
    ACTIVE_STATUSES,
    ERROR_STATUSES,
    EntryError,
    EntryStatus,
    ProcessingLease,
    QueueEntry,
    utc_now,
)
from merge_coordinator.utils.fs import atomic_write_text, read_text_or_none

_STATE_SCHEMA_VERSION: Final[int] = QUEUE_STATE_SCHEMA_VERSION
_REQUIRED_STATE_KEYS: Final[tuple[str, ...]] = (
    "schema_version",
    "queue",
    "processing",
    "failed",
    "completed",
)
_PARTITIONS: Final[tuple[str, ...]] = ("queue", "processing", "failed", "completed")

_LEGAL_TRANSITIONS: Final[dict[EntryStatus, frozenset[EntryStatus]]] = {
    EntryStatus.PROCESSING: frozenset(
        {EntryStatus.REBASING, EntryStatus.FAILED, EntryStatus.BLOCKED}
    ),
    EntryStatus.REBASING: frozenset({EntryStatus.TESTING, EntryStatus.FAILED, EntryStatus.BLOCKED}),
    EntryStatus.TESTING: frozenset({EntryStatus.MERGING, EntryStatus.FAILED, EntryStatus.BLOCKED}),
    EntryStatus.MERGING: frozenset(
        {EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.BLOCKED}
    ),
    EntryStatus.FAILED: frozenset({EntryStatus.QUEUED}),
    EntryStatus.BLOCKED: frozenset({EntryStatus.QUEUED}),
}

Clock = Callable[[], datetime]


class QueueStoreError(RuntimeError):
    """Base class for queue store failures."""


class QueueStateCorrupted(QueueStoreError):
    """Raised when the persisted document is unreadable or structurally invalid."""


class DuplicateEntry(QueueStoreError):
    """Raised when an entry id already exists anywhere in the store."""


class EntryNotFound(QueueStoreError, LookupError):
    """Raised when an entry id is unknown to the store."""


class InvalidTransition(QueueStoreError):
    """Raised when a status change is not allowed by the state machine."""


class NoActiveLease(QueueStoreError):
    """Raised when a heartbeat targets an entry that does not hold the lease."""


class AlreadyProcessing(QueueStoreError):
    """Raised by ``claim`` while another entry is in flight."""

    def __init__(self, holder_id: str) -> None:
        self.holder_id = holder_id
        super().__init__(f"entry {holder_id!r} is already being processed")


def legal_next_statuses(status: EntryStatus) -> frozenset[EntryStatus]:
    return _LEGAL_TRANSITIONS.get(status, frozenset())


def partition_for(status: EntryStatus) -> str:
    if status is EntryStatus.QUEUED:
        return "queue"
    if status in ACTIVE_STATUSES:
        return "processing"
    if status in ERROR_STATUSES:
        return "failed"
    return "completed"


@dataclass(slots=True)
class _Document:
    queue: list[QueueEntry] = field(default_factory=list)
    processing: list[QueueEntry] = field(default_factory=list)
    failed: list[QueueEntry] = field(default_factory=list)
    completed: list[QueueEntry] = field(default_factory=list)
    lease: ProcessingLease | None = None

    def partition(self, name: str) -> list[QueueEntry]:
        return getattr(self, name)  # type: ignore[no-any-return]

    def entries(self) -> Iterator[QueueEntry]:
        for name in _PARTITIONS:
            yield from self.partition(name)

    def find(self, entry_id: str) -> QueueEntry | None:
        for entry in self.entries():
            if entry.entry_id == entry_id:
                return entry
        return None

    def require(self, entry_id: str) -> QueueEntry:
        entry = self.find(entry_id)
        if entry is None:
            raise EntryNotFound(f"unknown queue entry: {entry_id}")
        return entry

    def active(self) -> QueueEntry | None:
        return self.processing[0] if self.processing else None

    def replace(self, previous: QueueEntry, updated: QueueEntry) -> None:
        source = self.partition(partition_for(previous.status))
        for index, candidate in enumerate(source):
            if candidate.entry_id == previous.entry_id:
                del source[index]
                break
        self.partition(partition_for(updated.status)).append(updated)

    def remove(self, entry: QueueEntry) -> None:
        source = self.partition(partition_for(entry.status))
        source[:] = [item for item in source if item.entry_id != entry.entry_id]

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"schema_version": _STATE_SCHEMA_VERSION}
        for name in _PARTITIONS:
            payload[name] = [
                entry.to_dict() for entry in sorted(self.partition(name), key=_entry_order)
            ]
        payload["lease"] = self.lease.to_dict() if self.lease is not None else None
        return payload


class QueueStore:
    """
    File-backed source of truth for queue entries and the processing lease.

    Every public call re-reads the document, validates it, applies one change
    and atomically rewrites it. The whole read-modify-write runs under an
    exclusive ``flock`` on ``<state_file>.lock``, so concurrent ``mergeq``
    processes sharing one state file never overwrite each other, and two
    ``claim`` calls can never both succeed.
    """

    def __init__(self, state_file: str | Path, *, clock: Clock = utc_now) -> None:
        self._state_file = Path(state_file).expanduser().resolve()
        self._clock = clock
        self._lock_file = self._state_file.with_name(self._state_file.name + ".lock")
        self._lock = threading.RLock()
        self._lock_depth = 0
        self._logger = structlog.get_logger(__name__)

    @property
    def state_file(self) -> Path:
        return self._state_file

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enqueue(self, entry: QueueEntry) -> QueueEntry:
        """Append a new entry to the queued partition."""
        with self._mutate() as document:
            if document.find(entry.entry_id) is not None:
                raise DuplicateEntry(f"queue entry already exists: {entry.entry_id}")
            queued = entry.with_status(EntryStatus.QUEUED)
            document.queue.append(queued)
        self._logger.info(
            "merge_queue_entry_enqueued",
            entry_id=queued.entry_id,
            project=queued.project,
            priority=queued.priority.value,
        )
        return queued

    def claim(self, entry_id: str, now: datetime | None = None) -> ProcessingLease:
        """Move a queued entry to ``processing`` and create the lease."""
        timestamp = self._now(now)
        with self._mutate() as document:
            holder = document.active()
            if holder is not None:
                raise AlreadyProcessing(holder.entry_id)
            if document.lease is not None:
                raise AlreadyProcessing(document.lease.entry_id)

            entry = document.require(entry_id)
            if entry.status is not EntryStatus.QUEUED:
                raise InvalidTransition(
                    f"cannot claim {entry_id}: status is {entry.status.value}, expected queued"
                )
            claimed = replace(entry, status=EntryStatus.PROCESSING, attempts=entry.attempts + 1)
            document.replace(entry, claimed)
            lease = ProcessingLease(entry_id=entry_id, heartbeat_at=timestamp, claimed_at=timestamp)
            document.lease = lease
        self._logger.info("merge_queue_entry_claimed", entry_id=entry_id)
        return lease

    def transition(
        self,
        entry_id: str,
        new_status: EntryStatus | str,
        error: EntryError | None = None,
        now: datetime | None = None,
    ) -> QueueEntry:
        """Apply one state-machine edge; ``queued -> processing`` goes through ``claim``."""
        target = EntryStatus(new_status)
        timestamp = self._now(now)
        with self._mutate() as document:
            entry = document.require(entry_id)
            allowed = legal_next_statuses(entry.status)
            if target not in allowed:
                raise InvalidTransition(
                    f"illegal transition for {entry_id}: "
                    f"{entry.status.value} -> {target.value}"
                )
            if target in ERROR_STATUSES and error is None:
                raise InvalidTransition(f"transition to {target.value} requires an error")
            if target not in ERROR_STATUSES and error is not None:
                raise InvalidTransition(f"transition to {target.value} must not carry an error")

            completed_at = timestamp if target is EntryStatus.COMPLETED else None
            updated = entry.with_status(target, error=error, completed_at=completed_at)
            document.replace(entry, updated)
        self._logger.info(
            "merge_queue_entry_transition",
            entry_id=entry_id,
            from_status=entry.status.value,
            to_status=target.value,
            error_kind=error.kind.value if error is not None else None,
        )
        return updated

    def heartbeat(self, entry_id: str, now: datetime | None = None) -> ProcessingLease:
        """Refresh ``heartbeat_at`` on the lease held by ``entry_id``."""
        timestamp = self._now(now)
        with self._mutate() as document:
            lease = document.lease
            entry = document.find(entry_id)
            if lease is None or lease.entry_id != entry_id or entry is None or not entry.is_active:
                raise NoActiveLease(f"entry {entry_id!r} does not hold the processing lease")
            refreshed = ProcessingLease(
                entry_id=entry_id,
                heartbeat_at=timestamp,
                claimed_at=lease.claimed_at,
            )
            document.lease = refreshed
        return refreshed

    def release(self, entry_id: str) -> bool:
        """Drop the lease if ``entry_id`` holds it; returns whether one was removed."""
        with self._exclusive():
            document = self._load()
            if document.lease is None or document.lease.entry_id != entry_id:
                return False
            document.lease = None
            self._persist(document)
        self._logger.info("merge_queue_lease_released", entry_id=entry_id)
        return True

    def retry(self, entry_id: str) -> QueueEntry:
        """Re-enqueue a failed or blocked entry, clearing its error."""
        with self._mutate() as document:
            entry = document.require(entry_id)
            if entry.status not in ERROR_STATUSES:
                raise InvalidTransition(
                    f"only failed or blocked entries can be retried; {entry_id} is "
                    f"{entry.status.value}"
                )
            updated = entry.with_status(EntryStatus.QUEUED)
            document.replace(entry, updated)
            if document.lease is not None and document.lease.entry_id == entry_id:
                document.lease = None
        self._logger.info("merge_queue_entry_retried", entry_id=entry_id)
        return updated

    def remove(self, entry_id: str) -> QueueEntry:
        """Delete a failed or blocked entry from the store."""
        with self._mutate() as document:
            entry = document.require(entry_id)
            if entry.status not in ERROR_STATUSES:
                raise InvalidTransition(
                    f"only failed or blocked entries can be removed; {entry_id} is "
                    f"{entry.status.value}"
                )
            document.remove(entry)
            if document.lease is not None and document.lease.entry_id == entry_id:
                document.lease = None
        self._logger.info("merge_queue_entry_removed", entry_id=entry_id)
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(
        self, status: EntryStatus | str | Iterable[EntryStatus | str] | None = None
    ) -> tuple[QueueEntry, ...]:
        """Entries ordered by priority (critical first), then arrival, then id."""
        wanted = _status_filter(status)
        document = self._read()
        selected = [
            entry for entry in document.entries() if wanted is None or entry.status in wanted
        ]
        return tuple(sorted(selected, key=_entry_order))

    def get(self, entry_id: str) -> QueueEntry:
        return self._read().require(entry_id)

    def lease(self) -> ProcessingLease | None:
        return self._read().lease

    def active_entry(self) -> QueueEntry | None:
        return self._read().active()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else self._clock()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the in-process lock and, at the outermost level, the sidecar ``flock``."""
        with self._lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            try:
                self._lock_file.parent.mkdir(parents=True, exist_ok=True)
                handle = self._lock_file.open("a+", encoding="utf-8")
            except OSError as exc:
                raise QueueStoreError(
                    f"failed to open queue lock file {self._lock_file}: {exc}"
                ) from exc
            with handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._lock_depth = 1
                try:
                    yield
                finally:
                    self._lock_depth = 0
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read(self) -> _Document:
        with self._exclusive():
            return self._load()

    @contextmanager
    def _mutate(self) -> Iterator[_Document]:
        with self._exclusive():
            document = self._load()
            yield document
            self._persist(document)

    def _load(self) -> _Document:
        try:
            raw = read_text_or_none(self._state_file)
        except OSError as exc:
            raise QueueStateCorrupted(
                f"failed to read queue state file {self._state_file}: {exc}"
            ) from exc
        if raw is None:
            return _Document()

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise QueueStateCorrupted(
                f"invalid JSON in queue state file {self._state_file}: {exc.msg}"
            ) from exc

        try:
            return _parse_document(parsed)
        except QueueStateCorrupted:
            raise
        except (TypeError, ValueError, KeyError) as exc:
            raise QueueStateCorrupted(
                f"invalid queue state file {self._state_file}: {exc}"
            ) from exc

    def _persist(self, document: _Document) -> None:
        text = json.dumps(
            document.to_payload(), sort_keys=True, indent=2, ensure_ascii=False
        )
        try:
            atomic_write_text(self._state_file, text + "\n")
        except OSError as exc:
            raise QueueStoreError(
                f"failed to write queue state file {self._state_file}: {exc}"
            ) from exc


def _parse_document(parsed: object) -> _Document:
    if not isinstance(parsed, dict):
        raise QueueStateCorrupted("queue state root must be an object")

    missing = [key for key in _REQUIRED_STATE_KEYS if key not in parsed]
    if missing:
        raise QueueStateCorrupted(f"queue state missing required keys: {', '.join(missing)}")

    version = parsed["schema_version"]
    if version != _STATE_SCHEMA_VERSION:
        raise QueueStateCorrupted(
            f"unsupported queue state schema version {version!r}; "
            f"expected {_STATE_SCHEMA_VERSION}"
        )

    document = _Document()
    seen: set[str] = set()
    for name in _PARTITIONS:
        raw_entries = parsed[name]
        if not isinstance(raw_entries, list):
            raise QueueStateCorrupted(f"queue state partition {name!r} must be a list")
        target = document.partition(name)
        for item in raw_entries:
            if not isinstance(item, dict):
                raise QueueStateCorrupted(f"queue state partition {name!r} holds a non-object")
            entry = QueueEntry.from_dict(item)
            if entry.entry_id in seen:
                raise QueueStateCorrupted(f"duplicate queue entry id: {entry.entry_id}")
            if partition_for(entry.status) != name:
                raise QueueStateCorrupted(
                    f"entry {entry.entry_id} with status {entry.status.value} "
                    f"stored in partition {name!r}"
                )
            seen.add(entry.entry_id)
            target.append(entry)

    if len(document.processing) > 1:
        ids = ", ".join(entry.entry_id for entry in document.processing)
        raise QueueStateCorrupted(f"more than one entry is processing: {ids}")

    lease_raw = parsed.get("lease")
    if lease_raw is not None:
        if not isinstance(lease_raw, dict):
            raise QueueStateCorrupted("queue state lease must be an object or null")
        lease = ProcessingLease.from_dict(lease_raw)
        if lease.entry_id not in seen:
            raise QueueStateCorrupted(f"lease references unknown entry: {lease.entry_id}")
        active = document.active()
        if active is not None and active.entry_id != lease.entry_id:
            raise QueueStateCorrupted(
                f"lease holder {lease.entry_id} differs from processing entry {active.entry_id}"
            )
        if lease.entry_id in {entry.entry_id for entry in document.queue}:
            raise QueueStateCorrupted(f"lease references a queued entry: {lease.entry_id}")
        document.lease = lease

    return document


def _status_filter(
    status: EntryStatus | str | Iterable[EntryStatus | str] | None,
) -> frozenset[EntryStatus] | None:
    if status is None:
        return None
    if isinstance(status, str):
        return frozenset({EntryStatus(status)})
    return frozenset(EntryStatus(item) for item in status)


def _entry_order(entry: QueueEntry) -> tuple[int, datetime, str]:
    return entry.sort_key


__all__ = [
    "AlreadyProcessing",
    "DuplicateEntry",
    "EntryNotFound",
    "InvalidTransition",
    "NoActiveLease",
    "QueueStateCorrupted",
    "QueueStore",
    "QueueStoreError",
    "legal_next_statuses",
    "partition_for",
]
