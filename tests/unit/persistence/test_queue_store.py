"""
merge-coordinator: unit tests for the durable queue store.

Purpose
- Validate the single-lease claim contract, the entry state machine, ordering,
  retry/remove semantics and corruption detection of the persisted document.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from merge_coordinator.domain import (
    EntryError,
    EntryStatus,
    ErrorKind,
    Priority,
    QueueEntry,
)
from merge_coordinator.persistence import (
    AlreadyProcessing,
    DuplicateEntry,
    EntryNotFound,
    InvalidTransition,
    NoActiveLease,
    QueueStateCorrupted,
    QueueStore,
    legal_next_statuses,
    partition_for,
)

if TYPE_CHECKING:
    from pathlib import Path

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CONFLICT = EntryError(kind=ErrorKind.CONFLICT, message="rebase conflict", details=("a.py",))


def _entry(entry_id: str, *, priority: Priority = Priority.NORMAL, offset: int = 0) -> QueueEntry:
    return QueueEntry(
        entry_id=entry_id,
        project="api",
        branch_ref=f"agent/{entry_id}",
        change_request_ref=f"pr-{entry_id}",
        priority=priority,
        queued_at=T0 + timedelta(seconds=offset),
    )


def _store(tmp_path: Path) -> QueueStore:
    return QueueStore(tmp_path / "state" / "queue.json", clock=lambda: T0)


def _drive_to(store: QueueStore, entry_id: str, status: EntryStatus) -> None:
    store.claim(entry_id)
    path = [EntryStatus.REBASING, EntryStatus.TESTING, EntryStatus.MERGING, EntryStatus.COMPLETED]
    for step in path:
        if status is EntryStatus.PROCESSING:
            return
        store.transition(entry_id, step)
        if step is status:
            return


# ---------------------------------------------------------------------------
# Enqueue / ordering
# ---------------------------------------------------------------------------


def test_enqueue_persists_document_with_all_partitions(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))

    payload = json.loads(store.state_file.read_text(encoding="utf-8"))
    assert payload["schema_version"] == 1
    assert [item["id"] for item in payload["queue"]] == ["a"]
    assert payload["processing"] == []
    assert payload["failed"] == []
    assert payload["completed"] == []
    assert payload["lease"] is None


def test_enqueue_rejects_duplicate_ids_in_any_partition(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")

    with pytest.raises(DuplicateEntry):
        store.enqueue(_entry("a"))


def test_critical_entry_jumps_ahead_of_earlier_normal_entries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("n1", offset=0))
    store.enqueue(_entry("n2", offset=1))
    store.enqueue(_entry("c1", priority=Priority.CRITICAL, offset=2))
    store.enqueue(_entry("l1", priority=Priority.LOW, offset=-60))

    assert [entry.entry_id for entry in store.list(EntryStatus.QUEUED)] == [
        "c1",
        "n1",
        "n2",
        "l1",
    ]


@settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    specs=st.lists(
        st.tuples(st.sampled_from(list(Priority)), st.integers(min_value=0, max_value=3600)),
        min_size=1,
        max_size=12,
    )
)
def test_list_order_matches_priority_then_arrival(tmp_path_factory, specs) -> None:  # type: ignore[no-untyped-def]
    store = QueueStore(tmp_path_factory.mktemp("order") / "queue.json", clock=lambda: T0)
    for index, (priority, offset) in enumerate(specs):
        store.enqueue(_entry(f"e{index:02d}", priority=priority, offset=offset))

    listed = store.list(EntryStatus.QUEUED)
    keys = [entry.sort_key for entry in listed]

    assert keys == sorted(keys)
    ranks = [key[0] for key in keys]
    assert ranks == sorted(ranks)


# ---------------------------------------------------------------------------
# Claim / lease
# ---------------------------------------------------------------------------


def test_claim_creates_lease_and_moves_entry_to_processing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))

    lease = store.claim("a")

    assert lease.entry_id == "a"
    assert lease.heartbeat_at == T0
    active = store.active_entry()
    assert active is not None
    assert active.status is EntryStatus.PROCESSING
    assert active.attempts == 1
    assert store.lease() == lease


def test_second_claim_fails_while_an_entry_is_in_flight(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.enqueue(_entry("b", offset=1))
    store.claim("a")

    with pytest.raises(AlreadyProcessing) as excinfo:
        store.claim("b")

    assert excinfo.value.holder_id == "a"
    assert store.get("b").status is EntryStatus.QUEUED


def test_concurrent_claims_from_separate_stores_admit_exactly_one_winner(tmp_path: Path) -> None:
    state_file = tmp_path / "queue.json"
    QueueStore(state_file).enqueue(_entry("a"))
    QueueStore(state_file).enqueue(_entry("b", offset=1))

    barrier = threading.Barrier(8)
    winners: list[str] = []
    losers: list[str] = []
    lock = threading.Lock()

    def attempt(entry_id: str) -> None:
        store = QueueStore(state_file)
        barrier.wait()
        try:
            store.claim(entry_id)
        except AlreadyProcessing:
            with lock:
                losers.append(entry_id)
            return
        except InvalidTransition:
            with lock:
                losers.append(entry_id)
            return
        with lock:
            winners.append(entry_id)

    threads = [
        threading.Thread(target=attempt, args=("a" if index % 2 == 0 else "b",))
        for index in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert len(losers) == 7
    processing = QueueStore(state_file).list(EntryStatus.PROCESSING)
    assert [entry.entry_id for entry in processing] == winners


def test_claim_rejects_non_queued_and_unknown_entries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    _drive_to(store, "a", EntryStatus.COMPLETED)
    store.release("a")

    with pytest.raises(InvalidTransition, match="expected queued"):
        store.claim("a")
    with pytest.raises(EntryNotFound):
        store.claim("missing")


def test_heartbeat_refreshes_only_the_holders_lease(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.enqueue(_entry("b", offset=1))
    store.claim("a")

    later = T0 + timedelta(seconds=30)
    refreshed = store.heartbeat("a", now=later)

    assert refreshed.heartbeat_at == later
    assert refreshed.claimed_at == T0
    with pytest.raises(NoActiveLease):
        store.heartbeat("b")


def test_release_is_idempotent_and_scoped_to_holder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")

    assert store.release("other") is False
    assert store.lease() is not None
    assert store.release("a") is True
    assert store.release("a") is False
    assert store.lease() is None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_happy_path_transitions_stamp_completed_at(tmp_path: Path) -> None:
    finished_at = T0 + timedelta(minutes=5)
    store = QueueStore(tmp_path / "queue.json", clock=lambda: finished_at)
    store.enqueue(_entry("a"))
    _drive_to(store, "a", EntryStatus.COMPLETED)

    done = store.get("a")
    assert done.status is EntryStatus.COMPLETED
    assert done.completed_at == finished_at
    assert store.list(EntryStatus.COMPLETED) == (done,)


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (EntryStatus.PROCESSING, EntryStatus.TESTING),
        (EntryStatus.PROCESSING, EntryStatus.COMPLETED),
        (EntryStatus.REBASING, EntryStatus.MERGING),
        (EntryStatus.TESTING, EntryStatus.QUEUED),
        (EntryStatus.COMPLETED, EntryStatus.QUEUED),
    ],
)
def test_illegal_transitions_are_rejected_without_writing(
    tmp_path: Path, start: EntryStatus, target: EntryStatus
) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    _drive_to(store, "a", start)
    before = store.state_file.read_text(encoding="utf-8")

    with pytest.raises(InvalidTransition):
        store.transition("a", target)

    assert store.state_file.read_text(encoding="utf-8") == before


def test_queued_to_processing_goes_through_claim_only(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))

    with pytest.raises(InvalidTransition):
        store.transition("a", EntryStatus.PROCESSING)
    assert EntryStatus.PROCESSING not in legal_next_statuses(EntryStatus.QUEUED)


def test_error_statuses_require_an_error_and_others_forbid_one(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")

    with pytest.raises(InvalidTransition, match="requires an error"):
        store.transition("a", EntryStatus.BLOCKED)
    with pytest.raises(InvalidTransition, match="must not carry an error"):
        store.transition("a", EntryStatus.REBASING, CONFLICT)

    blocked = store.transition("a", EntryStatus.BLOCKED, CONFLICT)
    assert blocked.error == CONFLICT
    assert partition_for(blocked.status) == "failed"


# ---------------------------------------------------------------------------
# Retry / remove
# ---------------------------------------------------------------------------


def test_retry_requeues_with_original_arrival_and_clears_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a", offset=5))
    store.claim("a")
    store.transition("a", EntryStatus.BLOCKED, CONFLICT)
    store.release("a")

    retried = store.retry("a")

    assert retried.status is EntryStatus.QUEUED
    assert retried.error is None
    assert retried.queued_at == T0 + timedelta(seconds=5)
    assert retried.attempts == 1
    assert store.list(EntryStatus.QUEUED) == (retried,)


def test_retry_is_not_repeatable_once_queued(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")
    store.transition("a", EntryStatus.FAILED, CONFLICT)
    store.release("a")
    store.retry("a")

    with pytest.raises(InvalidTransition, match="only failed or blocked"):
        store.retry("a")
    assert len(store.list()) == 1


def test_retry_drops_a_lease_left_behind_by_the_entry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")
    store.transition("a", EntryStatus.FAILED, CONFLICT)

    store.retry("a")

    assert store.lease() is None


def test_remove_only_deletes_failed_or_blocked_entries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.enqueue(_entry("b", offset=1))

    with pytest.raises(InvalidTransition):
        store.remove("b")

    store.claim("a")
    store.transition("a", EntryStatus.FAILED, CONFLICT)
    store.release("a")
    removed = store.remove("a")

    assert removed.entry_id == "a"
    with pytest.raises(EntryNotFound):
        store.get("a")
    with pytest.raises(EntryNotFound):
        store.remove("a")


# ---------------------------------------------------------------------------
# Durability / corruption
# ---------------------------------------------------------------------------


def test_state_survives_a_new_store_instance(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.enqueue(_entry("a"))
    store.claim("a")
    store.transition("a", EntryStatus.REBASING)

    reopened = QueueStore(store.state_file)

    active = reopened.active_entry()
    assert active is not None
    assert active.status is EntryStatus.REBASING
    lease = reopened.lease()
    assert lease is not None
    assert lease.entry_id == "a"


def test_missing_file_reads_as_empty_queue(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.list() == ()
    assert store.lease() is None
    assert not store.state_file.exists()


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        json.dumps([]),
        json.dumps({"schema_version": 1, "queue": []}),
        json.dumps(
            {
                "schema_version": 99,
                "queue": [],
                "processing": [],
                "failed": [],
                "completed": [],
                "lease": None,
            }
        ),
    ],
)
def test_unreadable_documents_raise_corruption(tmp_path: Path, payload: str) -> None:
    store = _store(tmp_path)
    store.state_file.parent.mkdir(parents=True, exist_ok=True)
    store.state_file.write_text(payload, encoding="utf-8")

    with pytest.raises(QueueStateCorrupted):
        store.list()


def _document(**partitions: object) -> dict[str, object]:
    base: dict[str, object] = {
        "schema_version": 1,
        "queue": [],
        "processing": [],
        "failed": [],
        "completed": [],
        "lease": None,
    }
    base.update(partitions)
    return base


def test_structural_violations_raise_corruption(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.state_file.parent.mkdir(parents=True, exist_ok=True)
    queued = _entry("a").to_dict()
    processing = dict(_entry("b").to_dict(), status="processing")
    other_processing = dict(_entry("c").to_dict(), status="testing")
    lease = {"entry_id": "a", "heartbeat_at": "2026-03-01T12:00:00Z", "claimed_at": "2026-03-01T12:00:00Z"}

    cases = [
        _document(queue=[queued, queued]),
        _document(failed=[queued]),
        _document(processing=[processing, other_processing]),
        _document(queue=[queued], lease=dict(lease, entry_id="ghost")),
        _document(queue=[queued], lease=lease),
        _document(queue=[queued], processing=[processing], lease=lease),
        _document(queue=[dict(queued, priority="urgent")]),
    ]
    for case in cases:
        store.state_file.write_text(json.dumps(case), encoding="utf-8")
        with pytest.raises(QueueStateCorrupted):
            store.list()
