"""
merge-coordinator: structured run logs.

Every run writes one JSON object per line to ``<log_dir>/<run_id>/mergeq.jsonl``.
Records travel through a bounded queue to a listener thread so a slow disk never
stalls the pipeline; when the queue is full, records are dropped and counted.
``structlog`` loggers are routed into the same stdlib tree, and correlation
fields (``run_id``, ``entry_id``) bound with :func:`correlation_scope` are
captured at the call site.
"""

from __future__ import annotations

import atexit
import contextvars
import copy
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from merge_coordinator.domain import datetime_to_iso8601z

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "mergeq.jsonl"
ROOT_LOGGER: Final[str] = "merge_coordinator"
CORRELATION_FIELDS: Final[tuple[str, ...]] = ("run_id", "entry_id")

_CORRELATION_ATTR: Final[str] = "_mergeq_correlation"
_RESERVED_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_SECRET_KEY: Final[re.Pattern[str]] = re.compile(
    r"secret|token|password|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_SECRET_TEXT: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b"), REDACTED),
    (re.compile(r"(https?://)[^/\s:@]+:[^/\s@]+@"), rf"\1{REDACTED}@"),
)

_correlation: contextvars.ContextVar[dict[str, str] | None] = contextvars.ContextVar(
    "merge_coordinator_correlation", default=None
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_installed = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(".mergeq/logs")
    logger_name: str = ROOT_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = False


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def current_correlation() -> dict[str, str]:
    return dict(_correlation.get() or {})


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records emitted inside the block; ``None`` unbinds."""
    bound = current_correlation()
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
            continue
        text = value.strip() if isinstance(value, str) else ""
        if not text:
            raise ValueError(f"correlation field {key!r} must be a non-empty string")
        bound[key] = text
    token = _correlation.set(bound)
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction and JSON shaping
# ---------------------------------------------------------------------------


def redact_text(text: str) -> str:
    for pattern, replacement in _SECRET_TEXT:
        text = pattern.sub(replacement, text)
    return text


def redact(value: JSONValue, key: str | None = None) -> JSONValue:
    """Mask values under secret-looking keys and secrets embedded in strings."""
    if key is not None and _is_secret_key(key):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, dict):
        return {name: redact(item, name) for name, item in value.items()}
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    # ``token_env`` names a variable; the name itself is safe to log.
    if lowered.endswith("_env"):
        return False
    return _SECRET_KEY.search(lowered) is not None


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return datetime_to_iso8601z(aware)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(name): _jsonable(item) for name, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    return repr(value)


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime_to_iso8601z(datetime.fromtimestamp(record.created, tz=UTC)),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
            "run_id": self._run_id,
        }
        event.update(getattr(record, _CORRELATION_ATTR, None) or {})

        fields = {
            name: _jsonable(value)
            for name, value in vars(record).items()
            if name not in _RESERVED_ATTRS and not name.startswith("_")
        }
        for name in CORRELATION_FIELDS:
            value = fields.pop(name, None)
            if isinstance(value, str) and value.strip():
                event[name] = value.strip()
        if fields:
            event["fields"] = redact(fields)

        if record.exc_text:
            event["exception"] = redact_text(record.exc_text)
        elif record.exc_info:
            event["exception"] = redact_text(self.formatException(record.exc_info))
        if record.stack_info:
            event["stack"] = redact_text(record.stack_info)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Queue plumbing
# ---------------------------------------------------------------------------


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Enqueues a snapshot of each record; never blocks the caller."""

    def __init__(self, capacity: int) -> None:
        super().__init__(queue.Queue(maxsize=capacity))
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        snapshot = copy.copy(record)
        snapshot.msg = record.getMessage()
        snapshot.args = None
        if record.exc_info:
            snapshot.exc_text = logging.Formatter().formatException(record.exc_info)
            snapshot.exc_info = None
        setattr(snapshot, _CORRELATION_ATTR, current_correlation())
        return snapshot

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class StructuredLoggingHandle:
    """An active logging setup; :meth:`shutdown` drains and closes the sinks."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def run_log_dir(self) -> Path:
        return self.log_path.parent

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        pending = self._queue_handler.queue
        while getattr(pending, "unfinished_tasks", 0) and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.logger.removeHandler(self._queue_handler)
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


# ---------------------------------------------------------------------------
# Setup / teardown
# ---------------------------------------------------------------------------


def configure_structlog() -> None:
    """Send structlog events through stdlib logging; kwargs become record extras."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER,
) -> StructuredLoggingHandle:
    """Configure logging from the ``[observability]`` config section."""
    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base = log_dir if log_dir is not None else section.get("log_dir", ".mergeq/logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (str, Path)) else ".mergeq/logs",
            logger_name=logger_name,
            level=level if isinstance(level, (str, int)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start queue-backed JSON-lines logging for one run, replacing any active setup."""
    global _active

    run_id = _require_text(config.run_id, "run_id")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be a positive integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    logger_name = _require_text(config.logger_name, "logger_name")
    level = _level_number(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLinesFormatter(run_id)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        # stderr: stdout carries --json command output.
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _DroppingQueueHandler(config.queue_size)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
    _install_atexit()
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``handle`` (default: the active one). Safe to call repeatedly."""
    global _active

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def _install_atexit() -> None:
    global _atexit_installed
    if not _atexit_installed:
        atexit.register(shutdown_logging)
        _atexit_installed = True


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty")
    return text


def _level_number(value: int | str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        resolved = logging.getLevelName(value.strip().upper())
        if isinstance(resolved, int):
            return resolved
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "CORRELATION_FIELDS",
    "JSONValue",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "current_correlation",
    "flush_logging",
    "get_active_logging_handle",
    "redact",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
