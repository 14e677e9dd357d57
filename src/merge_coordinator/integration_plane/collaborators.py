"""
merge_coordinator collaborators contracts.

Purpose
- Define the outcome records and protocols the pipeline depends on for version
  control, verification and change review.

Functional requirements
- Implementations may be synchronous or return awaitables; the pipeline awaits
  whatever comes back.
- Outcome records are immutable and carry only what the pipeline needs to pick
  the next transition.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from merge_coordinator.domain import MergeStrategy

T = TypeVar("T")
MaybeAwaitable = T | Awaitable[T]


@dataclass(frozen=True, slots=True)
class RebaseOutcome:
    ok: bool
    conflicting_files: tuple[str, ...] = ()
    remote_head: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "conflicting_files", tuple(self.conflicting_files))


@dataclass(frozen=True, slots=True)
class PushOutcome:
    ok: bool
    rejected_because_remote_moved: bool = False
    message: str = ""


@dataclass(frozen=True, slots=True)
class SuiteOutcome:
    passed: bool
    failing_tests: tuple[str, ...] = ()
    output: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "failing_tests", tuple(self.failing_tests))


@dataclass(frozen=True, slots=True)
class IntegrationOutcome:
    merged: bool
    blocked_reason: str | None = None


class VersionControl(Protocol):
    def prepare(self, project: str) -> MaybeAwaitable[None]: ...

    def fetch_trunk(self, project: str) -> MaybeAwaitable[str]:
        """Fetch the trunk and return the ref to rebase onto."""
        ...

    def rebase(
        self, project: str, branch_ref: str, onto_ref: str
    ) -> MaybeAwaitable[RebaseOutcome]: ...

    def push_force_with_lease(
        self, project: str, branch_ref: str, expected_remote_head: str | None
    ) -> MaybeAwaitable[PushOutcome]: ...

    def delete_branch(self, project: str, branch_ref: str) -> MaybeAwaitable[None]: ...


class VerificationRunner(Protocol):
    def run_suite(self, project: str, branch_ref: str) -> MaybeAwaitable[SuiteOutcome]: ...


class ChangeReview(Protocol):
    def request_integration(
        self, change_request_ref: str, strategy: MergeStrategy
    ) -> MaybeAwaitable[IntegrationOutcome]: ...


__all__ = [
    "ChangeReview",
    "IntegrationOutcome",
    "MaybeAwaitable",
    "PushOutcome",
    "RebaseOutcome",
    "SuiteOutcome",
    "VerificationRunner",
    "VersionControl",
]
