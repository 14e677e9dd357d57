"""Change-review collaborator backed by the GitHub ``gh`` CLI."""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping
from typing import Final

from merge_coordinator.domain import MergeStrategy
from merge_coordinator.integration_plane.collaborators import IntegrationOutcome

_STRATEGY_FLAGS: Final[dict[MergeStrategy, str]] = {
    MergeStrategy.SQUASH: "--squash",
    MergeStrategy.MERGE: "--merge",
    MergeStrategy.REBASE: "--rebase",
}


class ReviewSystemError(RuntimeError):
    """Raised when the review system cannot be reached at all."""


def merge_command(
    gh_binary: str, change_request_ref: str, strategy: MergeStrategy
) -> tuple[str, ...]:
    return (gh_binary, "pr", "merge", change_request_ref, _STRATEGY_FLAGS[strategy])


class GhChangeReview:
    """Asks the review system to merge a change request; a refusal is reported as blocked."""

    def __init__(
        self,
        *,
        gh_binary: str = "gh",
        timeout_seconds: float | None = 300.0,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._gh_binary = gh_binary
        self._timeout_seconds = timeout_seconds
        self._env_overrides = dict(env_overrides or {})

    def request_integration(
        self, change_request_ref: str, strategy: MergeStrategy
    ) -> IntegrationOutcome:
        binary = shutil.which(self._gh_binary)
        if binary is None:
            raise ReviewSystemError(f"review CLI not found on PATH: {self._gh_binary}")

        command = merge_command(binary, change_request_ref, MergeStrategy(strategy))
        env = {**os.environ, "GH_PROMPT_DISABLED": "1", **self._env_overrides}
        try:
            completed = subprocess.run(
                command,
                text=True,
                capture_output=True,
                timeout=self._timeout_seconds,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ReviewSystemError(
                f"review CLI timed out after {self._timeout_seconds}s merging {change_request_ref}"
            ) from exc

        if completed.returncode == 0:
            return IntegrationOutcome(merged=True)
        reason = completed.stderr.strip() or completed.stdout.strip()
        return IntegrationOutcome(
            merged=False,
            blocked_reason=reason or f"review CLI exited with status {completed.returncode}",
        )


__all__ = ["GhChangeReview", "ReviewSystemError", "merge_command"]
