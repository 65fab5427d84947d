"""
Bounded shutdown: per-task timeouts, the global deadline, and one-shot termination.
"""

import asyncio
import time
from datetime import timedelta

import pytest

from core.config.settings import LifecycleSettings
from services.brokers.base import ConnectionState
from services.lifecycle import (
    LifecycleCoordinator,
    LifecycleState,
    ShutdownTask,
    TaskStatus,
    run_bounded,
)
from core.utils.exceptions import PoolClosedError

UNIT = 0.05


def lifecycle_settings(task_units: float = 5, global_units: float = 8) -> LifecycleSettings:
    return LifecycleSettings(
        sweep_interval_seconds=3600.0,
        shutdown_task_timeout_seconds=task_units * UNIT,
        shutdown_global_timeout_seconds=global_units * UNIT,
    )


class TerminateRecorder:
    def __init__(self):
        self.codes = []
        self.called_at = []

    def __call__(self, code: int) -> None:
        self.codes.append(code)
        self.called_at.append(time.monotonic())


async def never_finishes():
    await asyncio.Event().wait()


async def finishes_in_one_unit():
    await asyncio.sleep(UNIT)


class TestRunBounded:

    @pytest.mark.asyncio
    async def test_success(self):
        outcome = await run_bounded(ShutdownTask("quick", finishes_in_one_unit), timeout=1.0)

        assert outcome.status == TaskStatus.SUCCEEDED
        assert outcome.succeeded
        assert outcome.error is None
        assert outcome.duration >= UNIT * 0.5

    @pytest.mark.asyncio
    async def test_timeout(self):
        outcome = await run_bounded(ShutdownTask("stuck", never_finishes), timeout=UNIT)

        assert outcome.status == TaskStatus.TIMED_OUT
        assert "stuck" in outcome.error

    @pytest.mark.asyncio
    async def test_failure_is_captured(self):
        async def boom():
            raise RuntimeError("disk full")

        outcome = await run_bounded(ShutdownTask("flush", boom), timeout=1.0)

        assert outcome.status == TaskStatus.FAILED
        assert outcome.error == "RuntimeError: disk full"

    @pytest.mark.asyncio
    async def test_task_timeout_overrides_default(self):
        outcome = await run_bounded(ShutdownTask("stuck", never_finishes, timeout=UNIT), timeout=60.0)

        assert outcome.status == TaskStatus.TIMED_OUT
        assert outcome.duration < 1.0


class TestShutdownSequence:

    @pytest.mark.asyncio
    async def test_global_deadline_forces_termination(self, pool, session_store):
        terminate = TerminateRecorder()
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)
        coordinator.register_cleanup("task_a", never_finishes, timeout=20 * UNIT)
        coordinator.register_cleanup("task_b", finishes_in_one_unit)

        started = time.monotonic()
        report = await coordinator.trigger_shutdown("SIGTERM")
        elapsed = time.monotonic() - started

        assert report.outcome("task_b").status == TaskStatus.SUCCEEDED
        assert report.outcome("task_a").status == TaskStatus.TIMED_OUT
        assert report.outcome("task_a").error == "global shutdown deadline reached"
        assert report.forced is True
        assert report.exit_code == 1
        assert terminate.codes == [1]
        assert terminate.called_at[0] - started <= 8 * UNIT + 0.25
        assert elapsed < 8 * UNIT + 0.25
        assert coordinator.state == LifecycleState.TERMINATED

    @pytest.mark.asyncio
    async def test_per_task_timeout_does_not_abort_siblings(self, pool, session_store):
        terminate = TerminateRecorder()
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)
        coordinator.register_cleanup("task_a", never_finishes)
        coordinator.register_cleanup("task_b", finishes_in_one_unit)

        report = await coordinator.trigger_shutdown("SIGTERM")

        assert report.outcome("task_a").status == TaskStatus.TIMED_OUT
        assert report.outcome("task_b").status == TaskStatus.SUCCEEDED
        assert report.outcome("broker_connections").status == TaskStatus.SUCCEEDED
        assert report.forced is False
        assert report.exit_code == 1
        assert terminate.codes == [1]

    @pytest.mark.asyncio
    async def test_clean_shutdown_exits_zero(self, pool, session_store):
        terminate = TerminateRecorder()
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)

        report = await coordinator.trigger_shutdown("SIGINT")

        assert report.exit_code == 0
        assert report.forced is False
        assert [o.name for o in report.outcomes] == ["session_sweep", "broker_connections", "session_store"]
        assert all(o.succeeded for o in report.outcomes)
        assert terminate.codes == [0]

    @pytest.mark.asyncio
    async def test_failing_task_is_recorded(self, pool, session_store):
        async def flush_fails():
            raise ConnectionError("broker unreachable")

        terminate = TerminateRecorder()
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)
        coordinator.register_cleanup("flush", flush_fails)

        report = await coordinator.trigger_shutdown("SIGTERM")

        assert report.outcome("flush").status == TaskStatus.FAILED
        assert "broker unreachable" in report.outcome("flush").error
        assert report.outcome("session_store").succeeded
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_repeated_triggers_share_one_shutdown(self, pool, session_store):
        terminate = TerminateRecorder()
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)
        coordinator.register_cleanup("task_b", finishes_in_one_unit)

        first, second = await asyncio.gather(
            coordinator.trigger_shutdown("SIGTERM"),
            coordinator.trigger_shutdown("SIGINT"),
        )
        third = await coordinator.trigger_shutdown("uncaught_exception")

        assert first is second is third
        assert first.reason == "SIGTERM"
        assert terminate.codes == [0]

    @pytest.mark.asyncio
    async def test_async_terminate_is_awaited(self, pool, session_store):
        codes = []

        async def terminate(code):
            codes.append(code)

        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings(), terminate=terminate)
        await coordinator.trigger_shutdown("SIGTERM")

        assert codes == [0]

    @pytest.mark.asyncio
    async def test_shutdown_closes_pool_and_releases_connections(self, pool, session_store,
                                                                 session_factory):
        await session_store.save(session_factory("alice"))
        await session_store.save(session_factory("bob"))
        handles = [await pool.get_or_create(u, "fake") for u in ("alice", "bob")]
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings())

        await coordinator.trigger_shutdown("SIGTERM")

        assert pool.closed
        assert len(pool) == 0
        assert all(h.connection.state == ConnectionState.DISCONNECTED for h in handles)
        with pytest.raises(PoolClosedError):
            await pool.get_or_create("alice", "fake")

    @pytest.mark.asyncio
    async def test_final_sweep_expires_sessions_before_store_closes(self, pool, session_store,
                                                                    session_factory):
        expired = session_factory("alice", expires_in=timedelta(minutes=-1))
        await session_store.save(expired)
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings())

        report = await coordinator.trigger_shutdown("SIGTERM")

        assert report.outcome("session_sweep").succeeded
        assert expired.is_active is False

    @pytest.mark.asyncio
    async def test_register_cleanup_after_shutdown_raises(self, pool, session_store):
        coordinator = LifecycleCoordinator(pool, session_store, lifecycle_settings())
        assert "session_store" in coordinator.cleanup_task_names()

        await coordinator.trigger_shutdown("SIGTERM")

        with pytest.raises(RuntimeError):
            coordinator.register_cleanup("late", finishes_in_one_unit)
