"""Integration plane: pipeline execution, lease health and external collaborators."""

from merge_coordinator.integration_plane.collaborators import (
    ChangeReview,
    IntegrationOutcome,
    PushOutcome,
    RebaseOutcome,
    SuiteOutcome,
    VerificationRunner,
    VersionControl,
)
from merge_coordinator.integration_plane.conflict_analyzer import (
    analyze_conflicts,
    overlapping_files,
)
from merge_coordinator.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    GitEngineError,
    GitVersionControl,
)
from merge_coordinator.integration_plane.heartbeat import DEFAULT_STALE_AFTER, HeartbeatMonitor
from merge_coordinator.integration_plane.pipeline import (
    PipelineExecutor,
    PipelineOutcome,
    PipelinePolicy,
)
from merge_coordinator.integration_plane.review import GhChangeReview, ReviewSystemError
from merge_coordinator.integration_plane.verification import (
    CommandVerificationRunner,
    VerificationError,
    parse_failing_tests,
)

__all__ = [
    "DEFAULT_STALE_AFTER",
    "ChangeReview",
    "CommandVerificationRunner",
    "GhChangeReview",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "GitVersionControl",
    "HeartbeatMonitor",
    "IntegrationOutcome",
    "PipelineExecutor",
    "PipelineOutcome",
    "PipelinePolicy",
    "PushOutcome",
    "RebaseOutcome",
    "ReviewSystemError",
    "SuiteOutcome",
    "VerificationError",
    "VerificationRunner",
    "VersionControl",
    "analyze_conflicts",
    "overlapping_files",
    "parse_failing_tests",
]
