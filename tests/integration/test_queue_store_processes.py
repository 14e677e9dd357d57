"""
merge-coordinator: queue store shared by several OS processes.

Purpose
- Validate that concurrent ``mergeq``-style writers on one state file never
  lose each other's updates.
"""

from __future__ import annotations

import os
import subprocess
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

from merge_coordinator.domain import EntryStatus, QueueEntry
from merge_coordinator.persistence import QueueStore

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

pytestmark = pytest.mark.integration

_ENQUEUE_SCRIPT = """
import sys
from merge_coordinator.domain import QueueEntry
from merge_coordinator.persistence import QueueStore

state_file, prefix, count = sys.argv[1], sys.argv[2], int(sys.argv[3])
store = QueueStore(state_file)
for index in range(count):
    entry_id = f"{prefix}-{index}"
    store.enqueue(
        QueueEntry(
            entry_id=entry_id,
            project="api",
            branch_ref=f"agent/{entry_id}",
            change_request_ref=str(index),
        )
    )
"""

_HEARTBEAT_SCRIPT = """
import sys
from merge_coordinator.persistence import QueueStore

state_file, entry_id, count = sys.argv[1], sys.argv[2], int(sys.argv[3])
store = QueueStore(state_file)
for _ in range(count):
    store.heartbeat(entry_id)
"""


def _spawn(script: str, *args: str) -> subprocess.Popen[str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing else f"{SRC_PATH}:{existing}"
    return subprocess.Popen(
        [sys.executable, "-c", script, *args],
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )


def _wait(processes: list[subprocess.Popen[str]]) -> None:
    for process in processes:
        _stdout, stderr = process.communicate(timeout=120)
        assert process.returncode == 0, stderr


def test_concurrent_enqueues_from_separate_processes_are_all_kept(tmp_path: Path) -> None:
    state_file = tmp_path / "queue.json"

    writers = [_spawn(_ENQUEUE_SCRIPT, str(state_file), prefix, "60") for prefix in ("p", "q", "r")]
    _wait(writers)

    stored = {entry.entry_id for entry in QueueStore(state_file).list()}
    expected = {f"{prefix}-{index}" for prefix in ("p", "q", "r") for index in range(60)}
    assert stored == expected


def test_heartbeats_from_a_running_processor_do_not_drop_new_entries(tmp_path: Path) -> None:
    state_file = tmp_path / "queue.json"
    store = QueueStore(state_file)
    store.enqueue(
        QueueEntry(
            entry_id="held",
            project="api",
            branch_ref="agent/held",
            change_request_ref="1",
            queued_at=datetime(2026, 3, 1, tzinfo=UTC),
        )
    )
    store.claim("held")

    processes = [
        _spawn(_HEARTBEAT_SCRIPT, str(state_file), "held", "200"),
        _spawn(_ENQUEUE_SCRIPT, str(state_file), "new", "100"),
    ]
    _wait(processes)

    queued = {entry.entry_id for entry in store.list(EntryStatus.QUEUED)}
    assert queued == {f"new-{index}" for index in range(100)}
    lease = store.lease()
    assert lease is not None
    assert lease.entry_id == "held"
    assert (tmp_path / "queue.json.lock").exists()
