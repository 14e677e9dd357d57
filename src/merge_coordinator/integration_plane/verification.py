"""Command-based verification runner for rebased branches."""

from __future__ import annotations

import os
import re
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Final

import structlog

from merge_coordinator.integration_plane.collaborators import SuiteOutcome

_FAILED_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^(?:FAILED|ERROR)\s+(\S+)", re.MULTILINE)
_OUTPUT_TAIL_CHARS: Final[int] = 8000

logger = structlog.get_logger(__name__)


class VerificationError(RuntimeError):
    """Raised when a verification command cannot be started at all."""


def parse_failing_tests(output: str) -> tuple[str, ...]:
    """Collect test ids from pytest-style ``FAILED <id>`` / ``ERROR <id>`` summary lines."""
    seen: dict[str, None] = {}
    for match in _FAILED_LINE_RE.finditer(output):
        seen.setdefault(match.group(1), None)
    return tuple(seen)


class CommandVerificationRunner:
    """Runs each configured command in the project's working copy; stops at the first failure."""

    def __init__(
        self,
        repo_paths: Mapping[str, Path | str],
        *,
        default_commands: Sequence[str] = (),
        project_commands: Mapping[str, Sequence[str]] | None = None,
        timeout_seconds: float | None = None,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._repo_paths = {name: Path(path) for name, path in repo_paths.items()}
        self._default_commands = tuple(default_commands)
        self._project_commands = {
            name: tuple(commands) for name, commands in (project_commands or {}).items()
        }
        self._timeout_seconds = timeout_seconds
        self._env_overrides = dict(env_overrides or {})

    def commands_for(self, project: str) -> tuple[str, ...]:
        return self._project_commands.get(project, self._default_commands)

    def run_suite(self, project: str, branch_ref: str) -> SuiteOutcome:
        repo_path = self._repo_paths.get(project)
        if repo_path is None:
            raise VerificationError(f"no working copy configured for project {project!r}")

        commands = self.commands_for(project)
        if not commands:
            logger.warning("merge_queue_verification_skipped", project=project, branch=branch_ref)
            return SuiteOutcome(passed=True, output="no verification commands configured")

        env = os.environ.copy()
        env["MERGEQ_PROJECT"] = project
        env["MERGEQ_BRANCH"] = branch_ref
        env.update(self._env_overrides)

        transcript: list[str] = []
        for command in commands:
            argv = shlex.split(command)
            if not argv:
                continue
            try:
                completed = subprocess.run(
                    argv,
                    cwd=repo_path,
                    env=env,
                    text=True,
                    capture_output=True,
                    timeout=self._timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise VerificationError(f"cannot run verification command {command!r}: {exc}") from exc
            except subprocess.TimeoutExpired:
                transcript.append(f"$ {command}\ntimed out after {self._timeout_seconds}s")
                return SuiteOutcome(
                    passed=False,
                    failing_tests=(command,),
                    output=_tail("\n".join(transcript)),
                )

            combined = "\n".join(part for part in (completed.stdout, completed.stderr) if part)
            transcript.append(f"$ {command}\n{combined}".rstrip())
            logger.info(
                "merge_queue_verification_command",
                project=project,
                command=command,
                returncode=completed.returncode,
            )
            if completed.returncode != 0:
                failing = parse_failing_tests(combined) or (command,)
                return SuiteOutcome(
                    passed=False,
                    failing_tests=failing,
                    output=_tail("\n".join(transcript)),
                )

        return SuiteOutcome(passed=True, output=_tail("\n".join(transcript)))


def _tail(text: str) -> str:
    if len(text) <= _OUTPUT_TAIL_CHARS:
        return text
    return text[-_OUTPUT_TAIL_CHARS:]


__all__ = ["CommandVerificationRunner", "VerificationError", "parse_failing_tests"]
