"""Advisory file-overlap detection between queued entries of one project."""

from __future__ import annotations

from collections.abc import Iterable

from merge_coordinator.domain import ConflictWarning, EntryStatus, QueueEntry


def overlapping_files(a: QueueEntry, b: QueueEntry) -> tuple[str, ...]:
    """Sorted intersection of both entries' changed files."""
    return tuple(sorted(set(a.files_changed) & set(b.files_changed)))


def analyze_conflicts(entries: Iterable[QueueEntry]) -> tuple[ConflictWarning, ...]:
    """
    Warn about every unordered pair of queued entries in the same project whose
    changed files intersect. Pairs are emitted in queue order; non-queued entries
    are ignored.
    """
    queued = sorted(
        (entry for entry in entries if entry.status is EntryStatus.QUEUED),
        key=lambda entry: entry.sort_key,
    )
    warnings: list[ConflictWarning] = []
    for index, first in enumerate(queued):
        for second in queued[index + 1 :]:
            if first.project != second.project:
                continue
            shared = overlapping_files(first, second)
            if shared:
                warnings.append(
                    ConflictWarning(
                        entry_a=first.entry_id,
                        entry_b=second.entry_id,
                        project=first.project,
                        overlapping_files=shared,
                    )
                )
    return tuple(warnings)


__all__ = ["analyze_conflicts", "overlapping_files"]
