"""Stable constants shared across coordinator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git defaults.
DEFAULT_TRUNK_BRANCH: Final[str] = "main"
DEFAULT_REMOTE: Final[str] = "origin"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
QUEUE_STATE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".mergeq")
DEFAULT_STATE_FILE: Final[PurePosixPath] = STATE_DIR / "queue.json"
DEFAULT_LOG_DIR: Final[PurePosixPath] = STATE_DIR / "logs"

# Lease health.
DEFAULT_STALE_AFTER_SECONDS: Final[int] = 600

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_LOG_DIR",
    "DEFAULT_REMOTE",
    "DEFAULT_STALE_AFTER_SECONDS",
    "DEFAULT_STATE_FILE",
    "DEFAULT_TRUNK_BRANCH",
    "QUEUE_STATE_SCHEMA_VERSION",
    "STATE_DIR",
]
