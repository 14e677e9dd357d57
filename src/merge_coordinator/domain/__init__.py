"""Domain records shared across the store, pipeline and scheduler."""

from merge_coordinator.domain.models import (
    ACTIVE_STATUSES,
    ERROR_STATUSES,
    PRIORITY_RANK,
    TERMINAL_STATUSES,
    ConflictWarning,
    EntryError,
    EntryStatus,
    ErrorKind,
    MergeStrategy,
    Priority,
    ProcessingLease,
    QueueEntry,
    clip_text,
    datetime_to_iso8601z,
    normalize_file_paths,
    parse_priority,
    utc_now,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ERROR_STATUSES",
    "PRIORITY_RANK",
    "TERMINAL_STATUSES",
    "ConflictWarning",
    "EntryError",
    "EntryStatus",
    "ErrorKind",
    "MergeStrategy",
    "Priority",
    "ProcessingLease",
    "QueueEntry",
    "clip_text",
    "datetime_to_iso8601z",
    "normalize_file_paths",
    "parse_priority",
    "utc_now",
]
