"""Time-bounded execution of cleanup actions."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from core.logging import get_monitoring_logger_safe
from core.utils.exceptions import ShutdownTimeoutError

logger = get_monitoring_logger_safe("lifecycle.bounded")


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ShutdownTask:
    """A named cleanup action with its own time bound."""
    name: str
    action: Callable[[], Awaitable[Any]]
    timeout: Optional[float] = None


@dataclass
class TaskOutcome:
    name: str
    status: TaskStatus
    duration: float
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


async def run_bounded(task: ShutdownTask, timeout: Optional[float] = None) -> TaskOutcome:
    """
    Run ``task.action`` for at most its timeout and report how it ended.

    ``task.timeout`` wins over the ``timeout`` argument; with neither, the
    action runs unbounded. Never raises for failures of the action itself.
    """
    limit = task.timeout if task.timeout is not None else timeout
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        if limit is not None:
            await asyncio.wait_for(task.action(), timeout=limit)
        else:
            await task.action()
    except asyncio.TimeoutError:
        error = ShutdownTimeoutError(
            f"Task {task.name} exceeded {limit}s",
            task_name=task.name,
            timeout=limit,
        )
        logger.warning("Cleanup task timed out", task=task.name, timeout=limit)
        return TaskOutcome(task.name, TaskStatus.TIMED_OUT, loop.time() - started, str(error))
    except Exception as e:
        logger.error("Cleanup task failed", task=task.name, error=str(e))
        return TaskOutcome(task.name, TaskStatus.FAILED, loop.time() - started, f"{type(e).__name__}: {e}")

    duration = loop.time() - started
    logger.info("Cleanup task completed", task=task.name, duration=round(duration, 3))
    return TaskOutcome(task.name, TaskStatus.SUCCEEDED, duration)
