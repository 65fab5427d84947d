"""
Periodic session sweep and routing of uncaught errors into shutdown.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.config.settings import LifecycleSettings
from core.monitoring import get_metrics_for_testing
from services.brokers.base import ConnectionState
from services.lifecycle import LifecycleCoordinator, LifecycleState
from services.sessions.models import ConnectionKey


def make_coordinator(pool, session_store, sweep_interval=3600.0, **kwargs):
    settings = LifecycleSettings(
        sweep_interval_seconds=sweep_interval,
        shutdown_task_timeout_seconds=1.0,
        shutdown_global_timeout_seconds=2.0,
    )
    return LifecycleCoordinator(pool, session_store, settings, **kwargs)


class TestTriggerSweep:

    @pytest.mark.asyncio
    async def test_expires_sessions_and_evicts_their_handles(self, pool, session_store, session_factory):
        alice = session_factory("alice")
        await session_store.save(alice)
        await session_store.save(session_factory("bob"))
        alice_handle = await pool.get_or_create("alice", "fake")
        bob_handle = await pool.get_or_create("bob", "fake")
        alice.expires_at = alice.expires_at - timedelta(hours=2)
        coordinator = make_coordinator(pool, session_store)

        report = await coordinator.trigger_sweep()

        assert report.expired_sessions == 1
        assert alice.is_active is False
        assert report.evicted == [ConnectionKey("alice", "fake")]
        assert alice_handle.connection.state == ConnectionState.DISCONNECTED
        assert bob_handle.connection.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_store_failure_still_sweeps_pool(self, pool, session_store, session_factory):
        await session_store.save(session_factory("alice"))
        await pool.get_or_create("alice", "fake")
        await session_store.mark_inactive("alice", "fake")
        session_store.expire_sweep = AsyncMock(side_effect=ConnectionError("database unavailable"))
        metrics = get_metrics_for_testing()
        coordinator = make_coordinator(pool, session_store, metrics=metrics)

        report = await coordinator.trigger_sweep()

        assert report.expired_sessions == 0
        assert report.evicted == [ConnectionKey("alice", "fake")]
        assert metrics.registry.get_sample_value("broker_session_sweeps_total", {"status": "failure"}) == 1.0

    @pytest.mark.asyncio
    async def test_periodic_loop_runs_until_shutdown(self, pool, session_store):
        coordinator = make_coordinator(pool, session_store, sweep_interval=0.02)
        pool.sweep = AsyncMock(wraps=pool.sweep)

        await coordinator.start()
        await asyncio.sleep(0.15)
        await coordinator.trigger_shutdown("SIGTERM")
        calls = pool.sweep.await_count
        await asyncio.sleep(0.05)

        assert calls >= 2
        assert pool.sweep.await_count == calls


class TestUncaughtErrors:

    @pytest.mark.asyncio
    async def test_loop_exception_routes_into_shutdown(self, pool, session_store):
        codes = []
        coordinator = make_coordinator(pool, session_store, terminate=codes.append)
        loop = asyncio.get_running_loop()

        coordinator._handle_loop_exception(loop, {
            "message": "Task exception was never retrieved",
            "exception": RuntimeError("strategy crashed"),
        })
        assert coordinator.state == LifecycleState.SHUTTING_DOWN

        report = await coordinator.request_shutdown("ignored")

        assert report.reason == "uncaught_exception"
        assert codes == [0]

    @pytest.mark.asyncio
    async def test_loop_exception_after_shutdown_is_only_logged(self, pool, session_store):
        codes = []
        coordinator = make_coordinator(pool, session_store, terminate=codes.append)
        await coordinator.trigger_shutdown("SIGTERM")

        coordinator._handle_loop_exception(asyncio.get_running_loop(), {"message": "late error"})

        assert codes == [0]
        assert coordinator.report.reason == "SIGTERM"
