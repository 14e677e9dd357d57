"""Control plane: queue draining and the operator-facing coordinator."""

from merge_coordinator.control_plane.controller import (
    CoordinatorError,
    MergeCoordinator,
    StatusView,
)
from merge_coordinator.control_plane.scheduler import ProcessReport, Scheduler

__all__ = [
    "CoordinatorError",
    "MergeCoordinator",
    "ProcessReport",
    "Scheduler",
    "StatusView",
]
