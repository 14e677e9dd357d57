"""
merge-coordinator: configuration schema.

The effective configuration is a plain nested dict shaped like
:class:`CoordinatorConfig`. Validation is table-driven: every section lists its
fields with a check that either returns the normalized value or raises
:class:`_Invalid`. Unknown keys are rejected, and keys that look like secrets
get a pointed message because credentials are referenced only through ``*_env``
keys holding an environment variable name.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from merge_coordinator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_LOG_DIR,
    DEFAULT_REMOTE,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_STATE_FILE,
    DEFAULT_TRUNK_BRANCH,
)
from merge_coordinator.domain import MergeStrategy

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("queue", "state_file"),
    ("observability", "log_dir"),
)
PROJECT_PATH_FIELDS: Final[tuple[str, ...]] = ("repo_path",)

REDACTED_VALUE: Final[str] = "<redacted>"

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROJECT_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
_SECRET_WORDS = re.compile(
    r"(?:^|_)(?:secret|token|passw(?:or)?d|api_?key|private|credentials?|auth)(?:_|$)"
)


class MetaConfig(TypedDict):
    schema_version: int


class QueueConfig(TypedDict):
    state_file: str
    stale_after_seconds: int


class GitConfig(TypedDict):
    trunk_branch: str
    remote: str
    delete_branch_after_merge: bool


class VerificationConfig(TypedDict):
    commands: list[str]
    timeout_seconds: float


class ReviewConfig(TypedDict):
    default_strategy: Literal["squash", "merge", "rebase"]
    gh_binary: str
    timeout_seconds: float
    token_env: NotRequired[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class ProjectConfig(TypedDict):
    repo_path: str
    trunk_branch: NotRequired[str]
    remote: NotRequired[str]
    merge_strategy: NotRequired[Literal["squash", "merge", "rebase"]]
    verification_commands: NotRequired[list[str]]
    delete_branch_after_merge: NotRequired[bool]


class CoordinatorConfig(TypedDict):
    meta: MetaConfig
    queue: QueueConfig
    git: GitConfig
    verification: VerificationConfig
    review: ReviewConfig
    observability: ObservabilityConfig
    projects: dict[str, ProjectConfig]


DEFAULT_CONFIG: Final[CoordinatorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "queue": {
        "state_file": DEFAULT_STATE_FILE.as_posix(),
        "stale_after_seconds": DEFAULT_STALE_AFTER_SECONDS,
    },
    "git": {
        "trunk_branch": DEFAULT_TRUNK_BRANCH,
        "remote": DEFAULT_REMOTE,
        "delete_branch_after_merge": True,
    },
    "verification": {
        "commands": [],
        "timeout_seconds": 1800.0,
    },
    "review": {
        "default_strategy": "squash",
        "gh_binary": "gh",
        "timeout_seconds": 300.0,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": DEFAULT_LOG_DIR.as_posix(),
        "log_to_stdout": False,
    },
    "projects": {},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """One or more config fields failed validation."""

    def __init__(self, issues: tuple[ConfigValidationIssue, ...] | list[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


# ---------------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------------


class _Invalid(Exception):
    pass


def _type_error(expected: str, value: object) -> _Invalid:
    return _Invalid(f"expected {expected}, got {type(value).__name__}")


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _type_error("string", value)
    stripped = value.strip()
    if not stripped:
        raise _Invalid("must not be empty")
    return stripped


def _path_text(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Invalid("must not contain NUL bytes")
    return text


def _text_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise _type_error("array of strings", value)
    items: list[str] = []
    for index, item in enumerate(value):
        try:
            items.append(_text(item))
        except _Invalid as exc:
            raise _Invalid(f"item {index}: {exc}") from None
    return items


def _env_name(value: object) -> str:
    text = _text(value)
    if _ENV_NAME.fullmatch(text) is None:
        raise _Invalid("must be an env var name (example: GH_TOKEN)")
    return text


def _boolean(value: object) -> bool:
    if not isinstance(value, bool):
        raise _type_error("boolean", value)
    return value


def _integer(minimum: int) -> Callable[[object], int]:
    def check(value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _type_error("integer", value)
        if value < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return value

    return check


def _number(minimum: float) -> Callable[[object], float]:
    def check(value: object) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _type_error("number", value)
        number = float(value)
        if not math.isfinite(number):
            raise _Invalid("must be finite")
        if number < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return number

    return check


def _choice(options: tuple[str, ...], *, upper: bool = False) -> Callable[[object], str]:
    def check(value: object) -> str:
        text = _text(value)
        if upper:
            text = text.upper()
        if text not in options:
            raise _Invalid(f"invalid value {text!r}; expected one of: {', '.join(sorted(options))}")
        return text

    return check


def _schema_version(value: object) -> int:
    version = _integer(1)(value)
    if version != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(version))
    return version


_STRATEGY = _choice(tuple(strategy.value for strategy in MergeStrategy))


@dataclass(frozen=True, slots=True)
class _Field:
    check: Callable[[object], object]
    required: bool = True


_Table = Mapping[str, _Field]

_SECTIONS: Final[Mapping[str, _Table]] = {
    "meta": {"schema_version": _Field(_schema_version)},
    "queue": {
        "state_file": _Field(_path_text),
        "stale_after_seconds": _Field(_integer(1)),
    },
    "git": {
        "trunk_branch": _Field(_text),
        "remote": _Field(_text),
        "delete_branch_after_merge": _Field(_boolean),
    },
    "verification": {
        "commands": _Field(_text_list),
        "timeout_seconds": _Field(_number(1.0)),
    },
    "review": {
        "default_strategy": _Field(_STRATEGY),
        "gh_binary": _Field(_path_text),
        "timeout_seconds": _Field(_number(1.0)),
        "token_env": _Field(_env_name, required=False),
    },
    "observability": {
        "log_level": _Field(_choice(("DEBUG", "INFO", "WARNING", "ERROR"), upper=True)),
        "log_dir": _Field(_path_text),
        "log_to_stdout": _Field(_boolean),
    },
}

_PROJECT: Final[_Table] = {
    "repo_path": _Field(_path_text),
    "trunk_branch": _Field(_text, required=False),
    "remote": _Field(_text, required=False),
    "merge_strategy": _Field(_STRATEGY, required=False),
    "verification_commands": _Field(_text_list, required=False),
    "delete_branch_after_merge": _Field(_boolean, required=False),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> CoordinatorConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade mergeq.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the merge-coordinator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` without mutating either; lists are replaced."""
    merged: dict[str, Any] = _plain(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check ``config`` against the schema and return the normalized copy or every issue found."""
    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}"))
        return ConfigValidationResult(config=None, issues=tuple(issues))

    sections = {key: value for key, value in config.items() if key != "projects"}
    normalized: dict[str, Any] = {}
    _reject_unknown(sections, _SECTIONS, "", issues)
    for name, fields in _SECTIONS.items():
        if name not in sections:
            issues.append(ConfigValidationIssue(name, "missing required field"))
            continue
        section = _table(sections[name], fields, name, issues)
        if section is not None:
            normalized[name] = section
    normalized["projects"] = _projects(config.get("projects", {}), issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with ``*_env`` values and secret-looking keys replaced."""
    if not isinstance(config, Mapping):
        return {}
    return {key: _redacted(key, config[key]) for key in sorted(config, key=str)}


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _table(
    value: object, fields: _Table, path: str, issues: list[ConfigValidationIssue]
) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    _reject_unknown(value, fields, path, issues)
    out: dict[str, Any] = {}
    for key, field in fields.items():
        where = _join(path, key)
        if key not in value:
            if field.required:
                issues.append(ConfigValidationIssue(where, "missing required field"))
            continue
        try:
            out[key] = field.check(value[key])
        except _Invalid as exc:
            issues.append(ConfigValidationIssue(where, str(exc)))
    return out


def _projects(value: object, issues: list[ConfigValidationIssue]) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue("projects", f"expected object, got {type(value).__name__}"))
        return {}
    out: dict[str, Any] = {}
    for name in sorted(value, key=str):
        where = _join("projects", str(name))
        if not isinstance(name, str) or _PROJECT_NAME.fullmatch(name) is None:
            issues.append(
                ConfigValidationIssue(where, "project names may only use letters, digits, '.', '_', '-'")
            )
            continue
        project = _table(value[name], _PROJECT, where, issues)
        if project is not None:
            out[name] = project
    return out


def _reject_unknown(
    payload: Mapping[Any, object],
    allowed: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(payload, key=str):
        if key in allowed:
            continue
        where = _join(path, str(key))
        if not isinstance(key, str):
            issues.append(ConfigValidationIssue(where, "object keys must be strings"))
        elif _is_secret_key(key):
            issues.append(
                ConfigValidationIssue(
                    where,
                    "embedded secret values are forbidden; use an *_env key with an env var name",
                )
            )
        else:
            issues.append(ConfigValidationIssue(where, "unknown field"))


def _snake(key: str) -> str:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip())
    return re.sub(r"[^a-z0-9]+", "_", spaced.lower()).strip("_")


def _is_secret_key(key: str) -> bool:
    normalized = _snake(key)
    return not normalized.endswith("_env") and _SECRET_WORDS.search(normalized) is not None


def _redacted(key: object, value: object) -> object:
    if isinstance(key, str) and (_snake(key).endswith("_env") or _is_secret_key(key)):
        return REDACTED_VALUE
    if isinstance(value, Mapping):
        return {name: _redacted(name, value[name]) for name in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_redacted(None, item) for item in value]
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "CoordinatorConfig",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "PROJECT_PATH_FIELDS",
    "ProjectConfig",
    "REDACTED_VALUE",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
