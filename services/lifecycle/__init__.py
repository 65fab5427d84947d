"""Periodic sweeps and bounded shutdown."""

from .bounded import ShutdownTask, TaskOutcome, TaskStatus, run_bounded
from .coordinator import LifecycleCoordinator, LifecycleState, ShutdownReport

__all__ = [
    "ShutdownTask",
    "TaskOutcome",
    "TaskStatus",
    "run_bounded",
    "LifecycleCoordinator",
    "LifecycleState",
    "ShutdownReport",
]
