"""
merge-coordinator: configuration loading.

Layers, lowest first: built-in defaults, ``mergeq.toml`` (or the file named by
``MERGEQ_CONFIG``), ``MERGEQ_*`` environment variables, then CLI flags. The
result is validated after the file layer and again after the overrides, and
relative paths are anchored at the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from merge_coordinator.config.schema import (
    PATH_FIELDS,
    PROJECT_PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "mergeq.toml"
ENV_PREFIX: Final[str] = "MERGEQ_"
CONFIG_PATH_ENV: Final[str] = f"{ENV_PREFIX}CONFIG"

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def _as_text(raw: str) -> str:
    return raw.strip()


def _as_int(raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_float(raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError("must be a number") from None


def _as_bool(raw: str) -> bool:
    word = raw.strip().lower()
    if word in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if word in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


# Per-project tables and list values are file-only.
ENV_BINDINGS: Final[Mapping[ConfigPath, Callable[[str], object]]] = {
    ("queue", "state_file"): _as_text,
    ("queue", "stale_after_seconds"): _as_int,
    ("git", "trunk_branch"): _as_text,
    ("git", "remote"): _as_text,
    ("git", "delete_branch_after_merge"): _as_bool,
    ("verification", "timeout_seconds"): _as_float,
    ("review", "default_strategy"): _as_text,
    ("review", "gh_binary"): _as_text,
    ("review", "timeout_seconds"): _as_float,
    ("review", "token_env"): _as_text,
    ("observability", "log_level"): _as_text,
    ("observability", "log_dir"): _as_text,
    ("observability", "log_to_stdout"): _as_bool,
}


def env_var_name(path: ConfigPath) -> str:
    """``("queue", "stale_after_seconds")`` -> ``MERGEQ_QUEUE_STALE_AFTER_SECONDS``."""
    return ENV_PREFIX + "_".join(path).upper()


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the effective config. CLI overrides use dotted keys; ``None`` values are skipped."""
    env = os.environ if environ is None else environ

    if config_path is None:
        from_env = env.get(CONFIG_PATH_ENV, "").strip()
        config_path = from_env or None
    required = config_path is not None
    source = (
        Path(config_path).expanduser().resolve()
        if config_path is not None
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )

    config = assert_valid_config(merge_config(default_config(), _read_toml(source, required)))
    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    config = assert_valid_config(config)
    return assert_valid_config(normalize_paths(config, base_dir=source.parent))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy with path fields expanded and made absolute against ``base_dir``."""
    result = merge_config({}, config)

    targets: list[ConfigPath] = list(PATH_FIELDS)
    projects = result.get("projects")
    if isinstance(projects, dict):
        targets.extend(
            ("projects", name, field) for name in sorted(projects) for field in PROJECT_PATH_FIELDS
        )

    for path in targets:
        *parents, leaf = path
        section: object = result
        for key in parents:
            section = section.get(key) if isinstance(section, dict) else None
        if isinstance(section, dict) and isinstance(section.get(leaf), str):
            section[leaf] = _absolute(section[leaf], base_dir)
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` safe to print or log."""
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ConfigLoadError(f"config file {path} is not valid UTF-8") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, parse in ENV_BINDINGS.items():
        name = env_var_name(path)
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            value = parse(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in overrides.items():
        if value is None:
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(layer, path, value)
    return layer


def _assign(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    for key in parents:
        target = target.setdefault(key, {})
    target[leaf] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "CONFIG_PATH_ENV",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_BINDINGS",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "env_var_name",
    "load_config",
    "normalize_paths",
]
