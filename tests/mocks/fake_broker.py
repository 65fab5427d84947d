"""
In-process broker variant for tests.
Records every remote hook call and can be told to fail or stall on any of them.
"""

import asyncio
from typing import Any, Dict, List, Optional

from core.config.settings import Settings
from core.monitoring import PrometheusMetricsCollector
from services.brokers.base import BrokerConnection, ConnectionState
from services.brokers.ticks import TickChannel


class FakeBroker(BrokerConnection):
    broker_type = "fake"

    def __init__(self, connect_delay: float = 0.0, fail_on: Optional[Dict[str, Exception]] = None,
                 tick_channel: Optional[TickChannel] = None,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        super().__init__(tick_channel=tick_channel, metrics=metrics)
        self.connect_delay = connect_delay
        self.fail_on: Dict[str, Exception] = dict(fail_on or {})
        self.calls: List[str] = []
        self.connect_calls = 0
        self.tokens: List[str] = []
        self.placed_orders: List[Dict[str, Any]] = []
        self.stream_subscribe_calls: List[List[int]] = []
        self.stream_unsubscribe_calls: List[List[int]] = []
        self.stream_open = False

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    # session flow
    def login_url(self) -> str:
        return "https://broker.test/login?api_key=fake"

    async def generate_session(self, request_token: str) -> Dict[str, Any]:
        async def _exchange():
            self._record("generate_session")
            return {"access_token": f"access-{request_token}", "refresh_token": "", "user_id": "FK001"}
        return await self._invoke("generate_session", _exchange)

    # remote hooks
    async def _connect_remote(self, access_token: str) -> None:
        self.connect_calls += 1
        self.tokens.append(access_token)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        self._record("connect")

    async def _disconnect_remote(self) -> None:
        self._record("disconnect")

    async def _fetch_profile(self) -> Dict[str, Any]:
        self._record("get_profile")
        return {"user_id": "FK001", "user_name": "Fake User", "broker": "FAKE"}

    async def _fetch_positions(self) -> Dict[str, Any]:
        self._record("get_positions")
        return {"net": [], "day": []}

    async def _fetch_holdings(self) -> List[Dict[str, Any]]:
        self._record("get_holdings")
        return [{"tradingsymbol": "INFY", "quantity": 10}]

    async def _fetch_orders(self) -> List[Dict[str, Any]]:
        self._record("get_orders")
        return [{"order_id": o["order_id"]} for o in self.placed_orders]

    async def _fetch_instruments(self, exchange: Optional[str]) -> List[Dict[str, Any]]:
        self._record("get_instruments")
        instruments = [
            {"instrument_token": 256265, "tradingsymbol": "NIFTY 50", "exchange": "NSE"},
            {"instrument_token": 265, "tradingsymbol": "SENSEX", "exchange": "BSE"},
        ]
        if exchange:
            return [i for i in instruments if i["exchange"] == exchange]
        return instruments

    async def _submit_order(self, params: Dict[str, Any]) -> str:
        self._record("place_order")
        order_id = f"ORD{len(self.placed_orders) + 1:04d}"
        self.placed_orders.append({**params, "order_id": order_id})
        return order_id

    async def _open_stream(self) -> None:
        self._record("connect_stream")
        self.stream_open = True
        await self._handle_stream_connected()

    async def _close_stream(self) -> None:
        self.stream_open = False
        self._record("close_stream")

    async def _stream_subscribe(self, instrument_ids: List[int]) -> None:
        self._record("subscribe")
        self.stream_subscribe_calls.append(list(instrument_ids))

    async def _stream_unsubscribe(self, instrument_ids: List[int]) -> None:
        self._record("unsubscribe")
        self.stream_unsubscribe_calls.append(list(instrument_ids))

    def _has_stream(self) -> bool:
        return self.stream_open

    # test controls
    def drop_stream(self) -> None:
        self.stream_open = False
        self._handle_stream_closed(1006, "connection lost")

    async def restore_stream(self) -> None:
        self.stream_open = True
        await self._handle_stream_connected()

    def simulate_connection_loss(self) -> None:
        self._state = ConnectionState.DISCONNECTED


class FakeBrokerBuilder:
    """Factory builder that keeps every FakeBroker it creates."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.instances: List[FakeBroker] = []

    def __call__(self, settings: Settings, metrics: Optional[PrometheusMetricsCollector]) -> FakeBroker:
        broker = FakeBroker(metrics=metrics, **self.kwargs)
        self.instances.append(broker)
        return broker

    @property
    def handshakes(self) -> int:
        return sum(b.connect_calls for b in self.instances)
