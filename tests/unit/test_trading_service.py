"""
Trading service operations resolved through the pool.
"""

from datetime import timedelta

import pytest

from core.config.settings import LifecycleSettings
from core.utils.exceptions import (
    NotAuthenticatedError,
    RemoteFailureError,
    SessionExpiredError,
    UnsupportedBrokerError,
)
from services.connections.service import TradingService
from services.lifecycle import LifecycleCoordinator


class TestReadOperations:

    @pytest.mark.asyncio
    async def test_first_call_connects_and_later_calls_reuse(self, trading_service, session_store,
                                                             session_factory, fake_builder):
        await session_store.save(session_factory("alice"))

        profile = await trading_service.get_profile("alice", "fake")
        positions = await trading_service.get_positions("alice", "fake")
        holdings = await trading_service.get_holdings("alice", "fake")

        assert profile["user_id"] == "FK001"
        assert positions == {"net": [], "day": []}
        assert holdings == [{"tradingsymbol": "INFY", "quantity": 10}]
        assert fake_builder.handshakes == 1

    @pytest.mark.asyncio
    async def test_instruments_filtered_by_exchange(self, trading_service, session_store, session_factory):
        await session_store.save(session_factory("alice"))

        everything = await trading_service.get_instruments("alice", "fake")
        bse = await trading_service.get_instruments("alice", "fake", exchange="BSE")

        assert len(everything) == 2
        assert [i["tradingsymbol"] for i in bse] == ["SENSEX"]

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, trading_service, session_store, session_factory):
        await session_store.save(session_factory("alice"))
        handle = await trading_service.get_broker_handle("alice", "fake")
        handle.connection.fail_on["get_positions"] = ConnectionError("gateway timeout")

        with pytest.raises(RemoteFailureError) as exc_info:
            await trading_service.get_positions("alice", "fake")

        assert exc_info.value.operation == "get_positions"
        assert isinstance(exc_info.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_session_errors_propagate(self, trading_service, session_store, session_factory):
        with pytest.raises(NotAuthenticatedError):
            await trading_service.get_profile("alice", "fake")

        await session_store.save(session_factory("bob", expires_in=timedelta(seconds=-1)))
        with pytest.raises(SessionExpiredError):
            await trading_service.get_profile("bob", "fake")

    @pytest.mark.asyncio
    async def test_unsupported_broker_rejected(self, trading_service):
        with pytest.raises(UnsupportedBrokerError):
            await trading_service.get_profile("alice", "upstox")

    @pytest.mark.asyncio
    async def test_active_sessions_summary(self, trading_service, session_store, session_factory):
        await session_store.save(session_factory("alice", access_token="secret-token"))

        sessions = await trading_service.get_active_sessions("alice")

        assert len(sessions) == 1
        assert sessions[0]["broker_type"] == "fake"
        assert "access_token" not in sessions[0]
        assert 3500 < sessions[0]["expires_in_seconds"] <= 3600

    @pytest.mark.asyncio
    async def test_ticks_returns_connection_channel(self, trading_service, session_store, session_factory):
        await session_store.save(session_factory("alice"))

        channel = await trading_service.ticks("alice", "fake")

        assert channel is trading_service.pool.get("alice", "fake").connection.ticks


class TestLifecycleOperations:

    @pytest.mark.asyncio
    async def test_disconnect_broker(self, trading_service, session_store, session_factory):
        await session_store.save(session_factory("alice"))
        await trading_service.get_profile("alice", "fake")

        assert await trading_service.disconnect_broker("alice", "fake") == {"success": True}
        with pytest.raises(NotAuthenticatedError):
            await trading_service.get_profile("alice", "fake")

    @pytest.mark.asyncio
    async def test_trigger_sweep_without_coordinator_sweeps_pool(self, trading_service):
        report = await trading_service.trigger_sweep()

        assert report.checked == 0

    @pytest.mark.asyncio
    async def test_trigger_shutdown_requires_coordinator(self, trading_service):
        with pytest.raises(RuntimeError):
            await trading_service.trigger_shutdown()

    @pytest.mark.asyncio
    async def test_trigger_shutdown_through_coordinator(self, pool, session_store):
        codes = []
        coordinator = LifecycleCoordinator(
            pool, session_store,
            LifecycleSettings(shutdown_task_timeout_seconds=1.0, shutdown_global_timeout_seconds=2.0),
            terminate=codes.append,
        )
        service = TradingService(pool, session_store, coordinator=coordinator)

        report = await service.trigger_shutdown("admin")

        assert report.reason == "admin"
        assert report.exit_code == 0
        assert codes == [0]
