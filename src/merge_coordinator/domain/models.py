"""Frozen domain records for the merge queue with strict validation and JSON round-trips."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Final, NoReturn, TypeVar

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_TEXT: Final[int] = 8192


class Priority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class EntryStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    REBASING = "rebasing"
    TESTING = "testing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ErrorKind(StrEnum):
    """Failure taxonomy recorded on failed/blocked entries."""

    CONFLICT = "conflict"
    TEST_FAILURE = "test-failure"
    MERGE_BLOCKED = "merge-blocked"
    STALE = "stale"
    MERGE_REJECTED = "merge-rejected"
    EXECUTION_ERROR = "execution-error"


class MergeStrategy(StrEnum):
    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"


# Lower rank sorts first.
PRIORITY_RANK: Final[dict[Priority, int]] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}

ACTIVE_STATUSES: Final[frozenset[EntryStatus]] = frozenset(
    {
        EntryStatus.PROCESSING,
        EntryStatus.REBASING,
        EntryStatus.TESTING,
        EntryStatus.MERGING,
    }
)
ERROR_STATUSES: Final[frozenset[EntryStatus]] = frozenset(
    {EntryStatus.FAILED, EntryStatus.BLOCKED}
)
TERMINAL_STATUSES: Final[frozenset[EntryStatus]] = frozenset(
    {EntryStatus.COMPLETED, *ERROR_STATUSES}
)


@dataclass(frozen=True, slots=True)
class EntryError:
    """Structured failure attached to a failed or blocked entry."""

    kind: ErrorKind
    message: str
    details: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(ErrorKind, self.kind, "EntryError.kind"))
        object.__setattr__(self, "message", _as_str(self.message, "EntryError.message"))
        object.__setattr__(
            self,
            "details",
            _as_str_tuple(self.details, "EntryError.details", unique=False),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": list(self.details),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> EntryError:
        data = _expect_object(
            payload, "EntryError", required={"kind", "message"}, optional={"details"}
        )
        return cls(
            kind=_as_enum(ErrorKind, data["kind"], "EntryError.kind"),
            message=_as_str(data["message"], "EntryError.message"),
            details=_as_str_tuple(data.get("details", ()), "EntryError.details", unique=False),
        )


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """One branch waiting for (or finished with) serialized integration."""

    entry_id: str
    project: str
    branch_ref: str
    change_request_ref: str
    priority: Priority = Priority.NORMAL
    queued_at: datetime | None = None
    files_changed: tuple[str, ...] = ()
    status: EntryStatus = EntryStatus.QUEUED
    error: EntryError | None = None
    completed_at: datetime | None = None
    merge_strategy: MergeStrategy | None = None
    attempts: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "entry_id", _as_str(self.entry_id, "QueueEntry.entry_id"))
        object.__setattr__(self, "project", _as_str(self.project, "QueueEntry.project"))
        object.__setattr__(self, "branch_ref", _as_str(self.branch_ref, "QueueEntry.branch_ref"))
        object.__setattr__(
            self,
            "change_request_ref",
            _as_str(self.change_request_ref, "QueueEntry.change_request_ref"),
        )
        object.__setattr__(
            self, "priority", _as_enum(Priority, self.priority, "QueueEntry.priority")
        )
        queued_at = self.queued_at if self.queued_at is not None else utc_now()
        object.__setattr__(self, "queued_at", _as_datetime(queued_at, "QueueEntry.queued_at"))
        object.__setattr__(
            self, "files_changed", normalize_file_paths(self.files_changed, "QueueEntry")
        )
        status = _as_enum(EntryStatus, self.status, "QueueEntry.status")
        object.__setattr__(self, "status", status)
        if self.merge_strategy is not None:
            object.__setattr__(
                self,
                "merge_strategy",
                _as_enum(MergeStrategy, self.merge_strategy, "QueueEntry.merge_strategy"),
            )
        if isinstance(self.attempts, bool) or not isinstance(self.attempts, int):
            _fail("QueueEntry.attempts", "expected integer")
        if self.attempts < 0:
            _fail("QueueEntry.attempts", "must be >= 0")

        if status in ERROR_STATUSES:
            if not isinstance(self.error, EntryError):
                _fail("QueueEntry.error", f"required when status is {status.value}")
        elif self.error is not None:
            _fail("QueueEntry.error", f"must be absent when status is {status.value}")

        if self.completed_at is not None:
            if status is not EntryStatus.COMPLETED:
                _fail("QueueEntry.completed_at", "only allowed on completed entries")
            object.__setattr__(
                self,
                "completed_at",
                _as_datetime(self.completed_at, "QueueEntry.completed_at"),
            )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        assert self.queued_at is not None
        return (PRIORITY_RANK[self.priority], self.queued_at, self.entry_id)

    def with_status(
        self,
        status: EntryStatus,
        *,
        error: EntryError | None = None,
        completed_at: datetime | None = None,
    ) -> QueueEntry:
        return replace(self, status=status, error=error, completed_at=completed_at)

    def to_dict(self) -> dict[str, JSONValue]:
        assert self.queued_at is not None
        return {
            "id": self.entry_id,
            "project": self.project,
            "branch_ref": self.branch_ref,
            "change_request_ref": self.change_request_ref,
            "priority": self.priority.value,
            "queued_at": datetime_to_iso8601z(self.queued_at),
            "files_changed": list(self.files_changed),
            "status": self.status.value,
            "error": self.error.to_dict() if self.error is not None else None,
            "completed_at": (
                datetime_to_iso8601z(self.completed_at) if self.completed_at is not None else None
            ),
            "merge_strategy": (
                self.merge_strategy.value if self.merge_strategy is not None else None
            ),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> QueueEntry:
        data = _expect_object(
            payload,
            "QueueEntry",
            required={"id", "project", "branch_ref", "change_request_ref", "priority", "queued_at"},
            optional={
                "files_changed",
                "status",
                "error",
                "completed_at",
                "merge_strategy",
                "attempts",
            },
        )
        error_raw = data.get("error")
        error = None
        if error_raw is not None:
            if not isinstance(error_raw, Mapping):
                _fail("QueueEntry.error", "expected object")
            error = EntryError.from_dict(error_raw)
        completed_raw = data.get("completed_at")
        strategy_raw = data.get("merge_strategy")
        return cls(
            entry_id=_as_str(data["id"], "QueueEntry.id"),
            project=_as_str(data["project"], "QueueEntry.project"),
            branch_ref=_as_str(data["branch_ref"], "QueueEntry.branch_ref"),
            change_request_ref=_as_str(
                data["change_request_ref"], "QueueEntry.change_request_ref"
            ),
            priority=_as_enum(Priority, data["priority"], "QueueEntry.priority"),
            queued_at=_as_datetime(data["queued_at"], "QueueEntry.queued_at"),
            files_changed=_as_str_tuple(
                data.get("files_changed", ()), "QueueEntry.files_changed", unique=False
            ),
            status=_as_enum(EntryStatus, data.get("status", "queued"), "QueueEntry.status"),
            error=error,
            completed_at=(
                _as_datetime(completed_raw, "QueueEntry.completed_at")
                if completed_raw is not None
                else None
            ),
            merge_strategy=(
                _as_enum(MergeStrategy, strategy_raw, "QueueEntry.merge_strategy")
                if strategy_raw is not None
                else None
            ),
            attempts=data.get("attempts", 0),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class ProcessingLease:
    """Exclusive claim on the single in-flight entry."""

    entry_id: str
    heartbeat_at: datetime
    claimed_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "entry_id", _as_str(self.entry_id, "ProcessingLease.entry_id"))
        object.__setattr__(
            self,
            "heartbeat_at",
            _as_datetime(self.heartbeat_at, "ProcessingLease.heartbeat_at"),
        )
        object.__setattr__(
            self,
            "claimed_at",
            _as_datetime(self.claimed_at, "ProcessingLease.claimed_at"),
        )

    def age(self, now: datetime) -> float:
        """Seconds elapsed since the last heartbeat."""
        return (_as_datetime(now, "now") - self.heartbeat_at).total_seconds()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "entry_id": self.entry_id,
            "heartbeat_at": datetime_to_iso8601z(self.heartbeat_at),
            "claimed_at": datetime_to_iso8601z(self.claimed_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ProcessingLease:
        data = _expect_object(
            payload,
            "ProcessingLease",
            required={"entry_id", "heartbeat_at", "claimed_at"},
        )
        return cls(
            entry_id=_as_str(data["entry_id"], "ProcessingLease.entry_id"),
            heartbeat_at=_as_datetime(data["heartbeat_at"], "ProcessingLease.heartbeat_at"),
            claimed_at=_as_datetime(data["claimed_at"], "ProcessingLease.claimed_at"),
        )


@dataclass(frozen=True, slots=True)
class ConflictWarning:
    """Advisory: two queued entries of one project touch the same files."""

    entry_a: str
    entry_b: str
    project: str
    overlapping_files: tuple[str, ...]

    def involves(self, entry_id: str) -> bool:
        return entry_id in (self.entry_a, self.entry_b)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "entry_a": self.entry_a,
            "entry_b": self.entry_b,
            "project": self.project,
            "overlapping_files": list(self.overlapping_files),
        }


def utc_now() -> datetime:
    return datetime.now(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def clip_text(text: str, limit: int = _MAX_TEXT) -> str:
    """Shorten free text (tool output, exception messages) to fit an ``EntryError`` field."""
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    marker = " ... [truncated]"
    return stripped[: limit - len(marker)].rstrip() + marker


def parse_priority(value: object) -> Priority:
    return _as_enum(Priority, value, "priority")


def normalize_file_paths(values: Iterable[object], owner: str) -> tuple[str, ...]:
    """Normalize repository-relative paths, dropping duplicates but keeping order."""
    if isinstance(values, (str, bytes)):
        _fail(f"{owner}.files_changed", "expected a sequence of paths, got a string")
    normalized: list[str] = []
    seen: set[str] = set()
    for index, item in enumerate(values):
        path = _as_str(item, f"{owner}.files_changed[{index}]", max_len=1024)
        if "\x00" in path:
            _fail(f"{owner}.files_changed[{index}]", "must not contain NUL bytes")
        text = PurePosixPath(path).as_posix()
        while text.startswith("./"):
            text = text[2:]
        if text in seen:
            continue
        seen.add(text)
        normalized.append(text)
    return tuple(normalized)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be non-empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str, *, unique: bool) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        _fail(path, f"expected array, got {type(value).__name__}")
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


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
