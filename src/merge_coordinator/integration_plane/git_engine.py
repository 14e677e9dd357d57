"""Git CLI wrapper for per-project working copies and the version-control adapter."""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from merge_coordinator.integration_plane.collaborators import PushOutcome, RebaseOutcome

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_REF_COMPONENT_RE = re.compile(r"^[A-Za-z0-9._/@+-]+$")
_STALE_LEASE_MARKERS = ("stale info", "fetch first", "non-fast-forward")


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class RebaseResult:
    """Result for branch rebase operation; ``conflicts`` is empty on success."""

    branch: str
    old_head: str
    new_head: str
    conflicts: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.conflicts


class GitEngine:
    """Wrapper around the git CLI bound to one project's working copy."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        trunk_branch: str = "main",
        remote: str = "origin",
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.trunk_branch = _validate_ref(trunk_branch, field="trunk_branch")
        self.remote = _validate_ref(remote, field="remote")
        self._env_overrides = dict(env_overrides or {})

    @property
    def trunk_ref(self) -> str:
        return f"{self.remote}/{self.trunk_branch}"

    def ensure_repository(self) -> None:
        if not self.repo_path.is_dir():
            raise GitEngineError(f"Working copy does not exist: {self.repo_path}")
        self._run_git(["rev-parse", "--git-dir"])

    def reset_working_copy(self) -> None:
        """Abort leftovers, discard local changes and check out the trunk."""
        self.ensure_repository()
        if self._rebase_in_progress():
            self._run_git(["rebase", "--abort"], check=False)
        self._run_git(["reset", "--hard"])
        self._run_git(["clean", "-fdx"])
        self._run_git(["checkout", "--force", self.trunk_branch])

    def fetch(self) -> str:
        """Fetch the remote and return the remote trunk ref."""
        self._run_git(["fetch", "--prune", self.remote])
        return self.trunk_ref

    def sync_trunk(self) -> None:
        """Move the checked-out local trunk to the fetched remote trunk."""
        self._run_git(["checkout", "--force", self.trunk_branch])
        self._run_git(["reset", "--hard", self.trunk_ref])

    def remote_head(self, branch: str) -> str | None:
        """Last fetched remote SHA of ``branch``; ``None`` when the remote has no such branch."""
        ref = f"refs/remotes/{self.remote}/{_validate_ref(branch, field='branch')}"
        result = self._run_git(["rev-parse", "--verify", "--quiet", ref], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def rebase(self, branch: str, onto: str) -> RebaseResult:
        """Rebase ``branch`` onto ``onto``; conflicts are reported, not resolved."""
        branch = _validate_ref(branch, field="branch")
        self._assert_not_trunk(branch, action="rebase")
        remote_ref = f"refs/remotes/{self.remote}/{branch}"
        if self.remote_head(branch) is not None:
            self._run_git(["checkout", "-B", branch, remote_ref])
        else:
            self._run_git(["checkout", branch])

        old_head = self.rev_parse("HEAD")
        result = self._run_git(["rebase", onto], check=False)
        if result.returncode == 0:
            return RebaseResult(branch=branch, old_head=old_head, new_head=self.rev_parse("HEAD"))

        conflicts = self.unmerged_files()
        self._run_git(["rebase", "--abort"], check=False)
        if not conflicts:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return RebaseResult(
            branch=branch,
            old_head=old_head,
            new_head=self.rev_parse("HEAD"),
            conflicts=conflicts,
        )

    def unmerged_files(self) -> tuple[str, ...]:
        output = self._run_git(["diff", "--name-only", "--diff-filter=U"]).stdout
        return tuple(sorted({line.strip() for line in output.splitlines() if line.strip()}))

    def push_force_with_lease(self, branch: str, expected_remote_head: str | None) -> CommandResult:
        """Push the local branch, refusing if the remote moved away from ``expected_remote_head``."""
        branch = _validate_ref(branch, field="branch")
        self._assert_not_trunk(branch, action="force-push")
        expected = expected_remote_head or ""
        return self._run_git(
            [
                "push",
                "--porcelain",
                f"--force-with-lease=refs/heads/{branch}:{expected}",
                self.remote,
                f"refs/heads/{branch}:refs/heads/{branch}",
            ],
            check=False,
        )

    def delete_branch(self, branch: str) -> None:
        """Delete ``branch`` on the remote and locally."""
        branch = _validate_ref(branch, field="branch")
        self._assert_not_trunk(branch, action="delete")
        if self.remote_head(branch) is not None:
            self._run_git(["push", self.remote, "--delete", branch])
        if self._branch_exists(branch):
            self._run_git(["checkout", "--force", self.trunk_branch])
            self._run_git(["branch", "-D", branch])

    def changed_files(self, base_ref: str, head_ref: str) -> tuple[str, ...]:
        """Paths touched by ``head_ref`` since it diverged from ``base_ref``."""
        output = self._run_git(["diff", "--name-only", f"{base_ref}...{head_ref}"]).stdout
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    def _branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def _rebase_in_progress(self) -> bool:
        git_dir_text = self._run_git(["rev-parse", "--git-dir"]).stdout.strip()
        git_dir = Path(git_dir_text)
        if not git_dir.is_absolute():
            git_dir = self.repo_path / git_dir
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def _assert_not_trunk(self, branch: str, *, action: str) -> None:
        if branch == self.trunk_branch:
            raise GitEngineError(f"Cannot {action} the trunk branch '{branch}'.")

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=env,
                text=True,
                capture_output=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise GitEngineError(f"git executable or working copy not found: {exc}") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


class GitVersionControl:
    """Version-control collaborator that routes each project to its own GitEngine."""

    def __init__(self, engines: Mapping[str, GitEngine]) -> None:
        self._engines = dict(engines)

    def engine_for(self, project: str) -> GitEngine:
        try:
            return self._engines[project]
        except KeyError:
            known = ", ".join(sorted(self._engines)) or "<none>"
            raise GitEngineError(
                f"no working copy configured for project {project!r}; known: {known}"
            ) from None

    def prepare(self, project: str) -> None:
        self.engine_for(project).reset_working_copy()

    def fetch_trunk(self, project: str) -> str:
        engine = self.engine_for(project)
        onto_ref = engine.fetch()
        engine.sync_trunk()
        return onto_ref

    def rebase(self, project: str, branch_ref: str, onto_ref: str) -> RebaseOutcome:
        engine = self.engine_for(project)
        remote_head = engine.remote_head(branch_ref)
        result = engine.rebase(branch_ref, onto_ref)
        return RebaseOutcome(
            ok=result.clean,
            conflicting_files=result.conflicts,
            remote_head=remote_head,
        )

    def push_force_with_lease(
        self, project: str, branch_ref: str, expected_remote_head: str | None
    ) -> PushOutcome:
        result = self.engine_for(project).push_force_with_lease(branch_ref, expected_remote_head)
        if result.returncode == 0:
            return PushOutcome(ok=True, message=result.stdout.strip())
        detail = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        moved = any(marker in detail for marker in _STALE_LEASE_MARKERS)
        return PushOutcome(ok=False, rejected_because_remote_moved=moved, message=detail)

    def delete_branch(self, project: str, branch_ref: str) -> None:
        self.engine_for(project).delete_branch(branch_ref)

    def changed_files(self, project: str, branch_ref: str) -> tuple[str, ...]:
        """Files ``branch_ref`` touches relative to the remote trunk, for conflict analysis."""
        engine = self.engine_for(project)
        trunk_ref = engine.fetch()
        head_ref = (
            f"refs/remotes/{engine.remote}/{branch_ref}"
            if engine.remote_head(branch_ref) is not None
            else branch_ref
        )
        return engine.changed_files(trunk_ref, head_ref)


def _validate_ref(value: str, *, field: str) -> str:
    normalized = value.strip()
    if not normalized or not _REF_COMPONENT_RE.fullmatch(normalized):
        raise GitEngineError(f"Unsafe {field} value: {value!r}")
    if normalized.startswith("-") or ".." in normalized:
        raise GitEngineError(f"Unsafe {field} value: {value!r}")
    return normalized


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "GitVersionControl",
    "RebaseResult",
]
