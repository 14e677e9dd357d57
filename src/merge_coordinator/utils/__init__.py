"""Shared helpers with no domain knowledge."""

from merge_coordinator.utils.fs import atomic_write_text, read_text_or_none

__all__ = ["atomic_write_text", "read_text_or_none"]
