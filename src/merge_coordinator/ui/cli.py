"""Command-line interface router for merge-coordinator."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from merge_coordinator.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
)
from merge_coordinator.control_plane import (
    CoordinatorError,
    MergeCoordinator,
    ProcessReport,
    StatusView,
)
from merge_coordinator.domain import MergeStrategy, Priority, QueueEntry, datetime_to_iso8601z
from merge_coordinator.integration_plane import GitEngineError
from merge_coordinator.observability import setup_logging, shutdown_logging
from merge_coordinator.persistence import (
    DuplicateEntry,
    EntryNotFound,
    InvalidTransition,
    QueueStateCorrupted,
)
from merge_coordinator.ui.render import CLIRenderer, create_renderer

_STORE_ERRORS = (DuplicateEntry, EntryNotFound, InvalidTransition, QueueStateCorrupted)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all queue operations."""

    parser = argparse.ArgumentParser(
        prog="mergeq",
        description=(
            "merge-coordinator: serialize merges of agent branches into trunk.\n\n"
            "Common workflows:\n"
            "  mergeq enqueue api feature/login 42   Queue a branch for merging\n"
            "  mergeq status                         Show queue, active entry, warnings\n"
            "  mergeq process                        Drain the queue once\n"
            "  mergeq retry api-1f2e3d               Requeue a failed or blocked entry\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to mergeq TOML config (default: ./mergeq.toml if present).",
    )
    common.add_argument(
        "--state-file",
        default=None,
        help="Override queue.state_file from config.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON output.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # enqueue -------------------------------------------------------------
    enqueue_parser = subparsers.add_parser(
        "enqueue",
        parents=[common],
        help="Add a branch to the merge queue",
        description=(
            "Queue a rebased-and-verified merge of BRANCH for PROJECT.\n\n"
            "Examples:\n"
            "  mergeq enqueue api feature/login 42\n"
            "  mergeq enqueue api hotfix/auth 43 --priority critical\n"
            "  mergeq enqueue web feature/nav 7 --file src/nav.ts --file src/app.ts\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    enqueue_parser.add_argument("project", help="Configured project name.")
    enqueue_parser.add_argument("branch", help="Branch to merge.")
    enqueue_parser.add_argument("change_request", help="Change request (pull request) reference.")
    enqueue_parser.add_argument("--id", dest="entry_id", default=None, help="Explicit entry id.")
    enqueue_parser.add_argument(
        "--priority",
        choices=[item.value for item in Priority],
        default=Priority.NORMAL.value,
        help="Queue priority (default: normal).",
    )
    enqueue_parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Changed file path, repeatable; used for conflict warnings.",
    )
    enqueue_parser.add_argument(
        "--strategy",
        choices=[item.value for item in MergeStrategy],
        default=None,
        help="Per-entry merge strategy override.",
    )
    enqueue_parser.add_argument(
        "--detect-files",
        action="store_true",
        default=False,
        help="Add files the branch changes relative to the remote trunk.",
    )
    enqueue_parser.set_defaults(handler=_cmd_enqueue)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show queued, active and failed entries plus conflict warnings",
    )
    status_parser.add_argument(
        "--completed",
        action="store_true",
        default=False,
        help="Also list completed entries.",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # process -------------------------------------------------------------
    process_parser = subparsers.add_parser(
        "process",
        parents=[common],
        help="Process queued entries until the queue is empty",
        description=(
            "Claim and merge queued entries one at a time.\n\n"
            "Exits 1 without work when another process holds a live lease.\n"
            "Ctrl-C stops after the in-flight entry.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    process_parser.set_defaults(handler=_cmd_process)

    # retry ---------------------------------------------------------------
    retry_parser = subparsers.add_parser(
        "retry",
        parents=[common],
        help="Return a failed or blocked entry to the queue",
    )
    retry_parser.add_argument("entry_id", help="Entry id to requeue.")
    retry_parser.set_defaults(handler=_cmd_retry)

    # remove --------------------------------------------------------------
    remove_parser = subparsers.add_parser(
        "remove",
        parents=[common],
        help="Delete a failed or blocked entry",
    )
    remove_parser.add_argument("entry_id", help="Entry id to delete.")
    remove_parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        default=False,
        help="Skip the confirmation prompt.",
    )
    remove_parser.set_defaults(handler=_cmd_remove)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_enqueue(args: argparse.Namespace) -> int:
    coordinator = _build_coordinator(args)
    try:
        entry = coordinator.enqueue(
            _require_str(args.project, "project"),
            _require_str(args.branch, "branch"),
            _require_str(args.change_request, "change_request"),
            entry_id=_optional_str(args.entry_id),
            priority=args.priority,
            files_changed=args.files,
            merge_strategy=args.strategy,
            detect_files=_flag(args, "detect_files"),
        )
    except (CoordinatorError, GitEngineError) as exc:
        raise CLIError(str(exc), exit_code=1) from exc
    except _STORE_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc

    if _flag(args, "json"):
        _emit_json({"entry": entry.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Queued {entry.entry_id}")
    renderer.kv("project", entry.project)
    renderer.kv("branch", entry.branch_ref)
    renderer.kv("change request", entry.change_request_ref)
    renderer.kv("priority", entry.priority.value)
    if entry.files_changed and renderer.verbose:
        renderer.section("Files:")
        renderer.items(entry.files_changed)
    _render_conflicts_for(renderer, coordinator.status(), entry.entry_id)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    coordinator = _build_coordinator(args)
    try:
        view = coordinator.status()
    except _STORE_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc

    if _flag(args, "json"):
        payload = view.to_dict()
        if not _flag(args, "completed"):
            payload.pop("completed")
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    _render_status(renderer, view, include_completed=_flag(args, "completed"))
    return 0


def _cmd_process(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    coordinator = _coordinator_from(config)
    run_id = f"process-{uuid.uuid4().hex[:12]}"
    handle = setup_logging(config.get("observability"), run_id=run_id)
    try:
        report = asyncio.run(_process_until_done(coordinator))
    except _STORE_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc
    finally:
        shutdown_logging(handle)

    if _flag(args, "json"):
        _emit_json({"run_id": run_id, **report.to_dict()})
    else:
        _render_report(_get_renderer(args), report)
    return 1 if report.busy else 0


def _cmd_retry(args: argparse.Namespace) -> int:
    coordinator = _build_coordinator(args)
    entry_id = _require_str(args.entry_id, "entry_id")
    try:
        entry = coordinator.retry(entry_id)
    except _STORE_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc

    if _flag(args, "json"):
        _emit_json({"entry": entry.to_dict()})
        return 0
    renderer = _get_renderer(args)
    renderer.heading(f"Requeued {entry.entry_id}")
    renderer.kv("queued at", datetime_to_iso8601z(entry.queued_at))
    renderer.kv("attempts so far", entry.attempts)
    return 0


def _cmd_remove(args: argparse.Namespace) -> int:
    coordinator = _build_coordinator(args)
    entry_id = _require_str(args.entry_id, "entry_id")
    if not _flag(args, "yes") and not _confirm(f"Remove {entry_id} from the queue? [y/N] "):
        raise CLIError("removal not confirmed; pass --yes to skip the prompt", exit_code=1)
    try:
        entry = coordinator.remove(entry_id)
    except _STORE_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc

    if _flag(args, "json"):
        _emit_json({"removed": entry.to_dict()})
        return 0
    _get_renderer(args).heading(f"Removed {entry.entry_id} ({entry.status.value})")
    return 0


# ---------------------------------------------------------------------------
# Process loop
# ---------------------------------------------------------------------------


async def _process_until_done(coordinator: MergeCoordinator) -> ProcessReport:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, coordinator.request_stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await coordinator.process()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_status(renderer: CLIRenderer, view: StatusView, *, include_completed: bool) -> None:
    renderer.heading("Merge queue")
    renderer.kv("queued", len(view.queued))
    renderer.kv("failed", len(view.failed) - len(view.blocked))
    renderer.kv("blocked", len(view.blocked))

    if view.active is not None:
        renderer.section("Active:")
        renderer.kv("  entry", view.active.entry_id)
        renderer.kv("  status", view.active.status.value)
        if view.lease is not None:
            renderer.kv("  heartbeat", datetime_to_iso8601z(view.lease.heartbeat_at))
            if view.lease_stale:
                renderer.warning("lease is stale; the next `mergeq process` reclaims it")

    renderer.table(
        ["ID", "PROJECT", "PRIORITY", "BRANCH", "QUEUED AT"],
        [_entry_row(entry) for entry in view.queued],
        title="Queued:",
    )
    renderer.table(
        ["ID", "STATUS", "ERROR", "DETAILS"],
        [
            [
                entry.entry_id,
                entry.status.value,
                entry.error.kind.value if entry.error is not None else "",
                ", ".join(entry.error.details) if entry.error is not None else "",
            ]
            for entry in view.failed
        ],
        title="Failed / blocked:",
    )
    if include_completed:
        renderer.table(
            ["ID", "PROJECT", "COMPLETED AT"],
            [
                [
                    entry.entry_id,
                    entry.project,
                    datetime_to_iso8601z(entry.completed_at) if entry.completed_at else "",
                ]
                for entry in view.completed
            ],
            title="Completed:",
        )

    if view.conflict_warnings:
        renderer.section("Conflict warnings:")
        for warning in view.conflict_warnings:
            renderer.warning(
                f"{warning.entry_a} and {warning.entry_b} ({warning.project}) both touch "
                + ", ".join(warning.overlapping_files)
            )

    if view.failed:
        renderer.next_steps([f"mergeq retry {view.failed[0].entry_id}"])
    elif view.queued and view.active is None:
        renderer.next_steps(["mergeq process"])


def _render_report(renderer: CLIRenderer, report: ProcessReport) -> None:
    if report.busy:
        renderer.heading("Busy: another process holds the lease")
        return
    renderer.heading("Processing finished")
    renderer.kv("completed", len(report.completed))
    renderer.kv("unsuccessful", len(report.unsuccessful))
    if report.reclaimed:
        renderer.kv("reclaimed", ", ".join(entry.entry_id for entry in report.reclaimed))
    if report.stopped:
        renderer.kv("stopped", "yes")
    renderer.table(
        ["ID", "STATUS", "ERROR"],
        [
            [
                outcome.entry_id,
                outcome.status.value,
                outcome.error.message if outcome.error is not None else "",
            ]
            for outcome in report.outcomes
        ],
        title="Outcomes:",
    )
    if report.unsuccessful:
        renderer.next_steps(["mergeq status"])


def _render_conflicts_for(renderer: CLIRenderer, view: StatusView, entry_id: str) -> None:
    for warning in view.conflict_warnings:
        if warning.involves(entry_id):
            other = warning.entry_b if warning.entry_a == entry_id else warning.entry_a
            renderer.warning(
                f"overlaps with queued {other} on " + ", ".join(warning.overlapping_files)
            )


def _entry_row(entry: QueueEntry) -> list[str]:
    return [
        entry.entry_id,
        entry.project,
        entry.priority.value,
        entry.branch_ref,
        datetime_to_iso8601z(entry.queued_at),
    ]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _build_coordinator(args: argparse.Namespace) -> MergeCoordinator:
    return _coordinator_from(_load_effective_config(args))


def _coordinator_from(config: Mapping[str, Any]) -> MergeCoordinator:
    try:
        return MergeCoordinator.from_config(config)
    except GitEngineError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    overrides = {"queue.state_file": _optional_str(getattr(args, "state_file", None))}

    try:
        return load_config(config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_str(value: object, name: str) -> str:
    text = _optional_str(value)
    if text is None:
        raise CLIError(f"{name} must not be empty", exit_code=2)
    return text


__all__ = ["CLIError", "build_parser", "run_cli"]
