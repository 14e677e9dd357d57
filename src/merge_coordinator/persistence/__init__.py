"""Durable queue state."""

from merge_coordinator.persistence.queue_store import (
    AlreadyProcessing,
    DuplicateEntry,
    EntryNotFound,
    InvalidTransition,
    NoActiveLease,
    QueueStateCorrupted,
    QueueStore,
    QueueStoreError,
    legal_next_statuses,
    partition_for,
)

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
