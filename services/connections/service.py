"""Trading façade over the connection pool."""

from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

from core.logging import get_logger
from core.utils.exceptions import UnsupportedBrokerError
from services.brokers.orders import validate_order_params
from services.brokers.subscriptions import validate_instrument_ids
from services.brokers.ticks import TickChannel
from services.sessions.models import ConnectionKey
from services.sessions.store import SessionStore
from .pool import ConnectionHandle, ConnectionPool, SweepReport

if TYPE_CHECKING:
    from services.lifecycle.coordinator import LifecycleCoordinator, ShutdownReport


class TradingService:
    """
    Operations against a user's authorized broker connection.

    Every call resolves the (user, broker) handle through the pool, so the
    first call after login performs the connect handshake and later calls
    reuse it. Errors from the pool and the connection propagate unchanged.
    """

    def __init__(self, pool: ConnectionPool, session_store: SessionStore,
                 coordinator: Optional["LifecycleCoordinator"] = None):
        self.pool = pool
        self.session_store = session_store
        self.coordinator = coordinator
        self.logger = get_logger(__name__, component="trading_service")

    async def get_broker_handle(self, user_id: str, broker_type: str) -> ConnectionHandle:
        if not self.pool.broker_factory.is_supported(broker_type):
            raise UnsupportedBrokerError(f"Unsupported broker: {broker_type}", broker_type=broker_type)
        return await self.pool.get_or_create(user_id, broker_type)

    async def disconnect_broker(self, user_id: str, broker_type: str) -> Dict[str, Any]:
        await self.pool.invalidate(user_id, broker_type)
        self.logger.info("Broker disconnected", user_id=user_id, broker_type=broker_type)
        return {"success": True}

    async def get_profile(self, user_id: str, broker_type: str) -> Dict[str, Any]:
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.get_profile()

    async def get_positions(self, user_id: str, broker_type: str) -> Dict[str, Any]:
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.get_positions()

    async def get_holdings(self, user_id: str, broker_type: str) -> List[Dict[str, Any]]:
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.get_holdings()

    async def get_orders(self, user_id: str, broker_type: str) -> List[Dict[str, Any]]:
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.get_orders()

    async def get_instruments(self, user_id: str, broker_type: str,
                              exchange: Optional[str] = None) -> List[Dict[str, Any]]:
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.get_instruments(exchange)

    async def place_order(self, user_id: str, broker_type: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        # Reject malformed orders before a handshake could touch the network
        validate_order_params(params)
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.connection.place_order(params)

    # ------------------------------------------------------------- streaming

    async def connect_stream(self, user_id: str, broker_type: str) -> Dict[str, Any]:
        handle = await self.get_broker_handle(user_id, broker_type)
        await handle.connection.connect_stream()
        return {"success": True, "subscriptions": handle.subscriptions.list_subscriptions()}

    async def subscribe(self, user_id: str, broker_type: str, instrument_ids: List[int]) -> List[int]:
        validate_instrument_ids(instrument_ids)
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.subscriptions.subscribe(instrument_ids)

    async def unsubscribe(self, user_id: str, broker_type: str, instrument_ids: List[int]) -> List[int]:
        validate_instrument_ids(instrument_ids)
        handle = await self.get_broker_handle(user_id, broker_type)
        return await handle.subscriptions.unsubscribe(instrument_ids)

    def list_subscriptions(self, user_id: str, broker_type: str) -> List[int]:
        manager = self.pool.subscriptions.peek(ConnectionKey(user_id, broker_type))
        return manager.list_subscriptions() if manager else []

    async def ticks(self, user_id: str, broker_type: str) -> TickChannel:
        handle = await self.get_broker_handle(user_id, broker_type)
        return handle.connection.ticks

    # -------------------------------------------------------------- sessions

    async def get_active_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        sessions = await self.session_store.list_active(user_id)
        return [s.to_summary() for s in sessions]

    # ------------------------------------------------------------- lifecycle

    async def trigger_sweep(self) -> SweepReport:
        if self.coordinator is None:
            return await self.pool.sweep()
        return await self.coordinator.trigger_sweep()

    async def trigger_shutdown(self, reason: str = "requested") -> "ShutdownReport":
        if self.coordinator is None:
            raise RuntimeError("No lifecycle coordinator configured")
        return await self.coordinator.trigger_shutdown(reason)
