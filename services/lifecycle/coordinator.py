"""
Process lifecycle: periodic session sweeps and bounded shutdown.
"""

import asyncio
import inspect
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config.settings import LifecycleSettings
from core.logging import get_logger, get_error_logger_safe
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import ShutdownForcedError, create_error_context
from services.connections.pool import ConnectionPool, SweepReport
from services.sessions.models import utcnow
from services.sessions.store import SessionStore
from .bounded import ShutdownTask, TaskOutcome, TaskStatus, run_bounded


class LifecycleState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass
class ShutdownReport:
    reason: str
    outcomes: List[TaskOutcome] = field(default_factory=list)
    forced: bool = False
    exit_code: int = 0
    duration: float = 0.0

    def outcome(self, name: str) -> Optional[TaskOutcome]:
        return next((o for o in self.outcomes if o.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "forced": self.forced,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class LifecycleCoordinator:
    """
    Owns the periodic sweep and the one-shot shutdown sequence.

    Shutdown runs every registered cleanup task concurrently, each under its
    own timeout, and stops waiting at the global deadline. ``terminate`` is
    called exactly once with 0 when every task succeeded and 1 otherwise.
    """

    def __init__(self, pool: ConnectionPool, session_store: SessionStore,
                 settings: LifecycleSettings,
                 terminate: Optional[Callable[[int], Any]] = None,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.pool = pool
        self.session_store = session_store
        self.sweep_interval = settings.sweep_interval_seconds
        self.task_timeout = settings.shutdown_task_timeout_seconds
        self.global_timeout = settings.shutdown_global_timeout_seconds
        self._terminate = terminate
        self.metrics = metrics

        self._state = LifecycleState.RUNNING
        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._report: Optional[ShutdownReport] = None
        self._expiry_done: Optional[asyncio.Event] = None

        self._cleanup_tasks: List[ShutdownTask] = [
            ShutdownTask("session_sweep", self._final_expiry),
            ShutdownTask("broker_connections", self._release_connections),
            ShutdownTask("session_store", self._close_store),
        ]

        self.logger = get_logger(__name__, component="lifecycle")
        self.error_logger = get_error_logger_safe("lifecycle")

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def report(self) -> Optional[ShutdownReport]:
        return self._report

    def set_terminate(self, terminate: Callable[[int], Any]) -> None:
        self._terminate = terminate

    def register_cleanup(self, name: str, action: Callable[[], Awaitable[Any]],
                         timeout: Optional[float] = None) -> None:
        """Add a cleanup task to the shutdown sequence."""
        if self._state != LifecycleState.RUNNING:
            raise RuntimeError(f"Cannot register cleanup task {name} while {self._state.value}")
        self._cleanup_tasks.append(ShutdownTask(name, action, timeout))

    def cleanup_task_names(self) -> List[str]:
        return [t.name for t in self._cleanup_tasks]

    # ----------------------------------------------------------------- sweep

    async def start(self) -> None:
        """Start the periodic sweep loop."""
        if self._sweep_task is None and self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self.logger.info("Session sweep scheduled", interval_seconds=self.sweep_interval)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.trigger_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.error_logger.error("Session sweep error", **create_error_context(e, "sweep"))

    async def trigger_sweep(self) -> SweepReport:
        """Bulk-expire stored sessions, then evict pooled handles whose session is gone."""
        success = True
        expired = 0
        try:
            expired = await self.session_store.expire_sweep(utcnow())
        except Exception as e:
            success = False
            self.error_logger.error("Session expiry sweep failed", **create_error_context(e, "expire_sweep"))

        report = await self.pool.sweep()
        report.expired_sessions = expired
        if report.failures:
            success = False
        if self.metrics:
            self.metrics.record_sweep(success)
        self.logger.info("Sweep finished", **report.to_dict())
        return report

    async def _stop_sweep_loop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------ default cleanups

    async def _final_expiry(self) -> None:
        try:
            await self.session_store.expire_sweep(utcnow())
        finally:
            self._expiry_done.set()

    async def _release_connections(self) -> None:
        await self.pool.disconnect_all()

    async def _close_store(self) -> None:
        # The store must outlive the final expiry sweep
        await self._expiry_done.wait()
        await self.session_store.close()

    # -------------------------------------------------------------- shutdown

    def request_shutdown(self, reason: str) -> asyncio.Task:
        """Start shutdown if not already started; returns the shutdown task."""
        if self._shutdown_task is None:
            self._state = LifecycleState.SHUTTING_DOWN
            self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown(reason))
        else:
            self.logger.info("Shutdown already in progress", reason=reason)
        return self._shutdown_task

    async def trigger_shutdown(self, reason: str = "requested") -> ShutdownReport:
        """Run the shutdown sequence once; later calls await the same result."""
        return await asyncio.shield(self.request_shutdown(reason))

    async def _shutdown(self, reason: str) -> ShutdownReport:
        loop = asyncio.get_running_loop()
        started = loop.time()
        self.logger.warning("Shutdown initiated", reason=reason,
                            tasks=self.cleanup_task_names(),
                            global_timeout=self.global_timeout)

        await self._stop_sweep_loop()
        self.pool.close()
        self._expiry_done = asyncio.Event()

        futures = {
            asyncio.ensure_future(run_bounded(task, self.task_timeout)): task
            for task in self._cleanup_tasks
        }
        done, pending = await asyncio.wait(futures, timeout=self.global_timeout)

        outcomes: List[TaskOutcome] = []
        for future, task in futures.items():
            if future in done:
                outcomes.append(future.result())
            else:
                outcomes.append(TaskOutcome(
                    task.name, TaskStatus.TIMED_OUT, loop.time() - started,
                    "global shutdown deadline reached",
                ))

        forced = bool(pending)
        if forced:
            outstanding = [futures[f].name for f in pending]
            for future in pending:
                future.cancel()
            error = ShutdownForcedError(
                f"Shutdown deadline of {self.global_timeout}s reached with tasks outstanding",
                outstanding=outstanding,
            )
            self.error_logger.error("Forced shutdown", **create_error_context(
                error, "shutdown", {"outstanding": outstanding, "reason": reason}))

        if self.metrics:
            for outcome in outcomes:
                self.metrics.record_shutdown_task(outcome.name, outcome.status.value)

        exit_code = 0 if not forced and all(o.succeeded for o in outcomes) else 1
        report = ShutdownReport(
            reason=reason,
            outcomes=outcomes,
            forced=forced,
            exit_code=exit_code,
            duration=loop.time() - started,
        )
        self._report = report
        self._state = LifecycleState.TERMINATED

        log = self.logger.info if exit_code == 0 else self.logger.error
        log("Shutdown complete", **report.to_dict())

        await self._call_terminate(exit_code)
        return report

    async def _call_terminate(self, exit_code: int) -> None:
        if self._terminate is None:
            return
        result = self._terminate(exit_code)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------- signal plumbing

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGTERM and SIGINT into the shutdown sequence."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Fallback where the loop cannot own signals
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self._handle_signal, signum))

    def _handle_signal(self, signum) -> None:
        name = signal.Signals(signum).name
        self.logger.warning("Received shutdown signal", signal=name)
        self.request_shutdown(name)

    def install_exception_handler(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route uncaught asyncio exceptions into the shutdown sequence."""
        loop = loop or asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exception = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        if exception is not None:
            self.error_logger.error(message, **create_error_context(exception, "event_loop"),
                                    exc_info=exception)
        else:
            self.error_logger.error(message)
        if self._state == LifecycleState.RUNNING:
            self.request_shutdown("uncaught_exception")
