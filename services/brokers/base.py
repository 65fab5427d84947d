"""
Broker connection interface.

A BrokerConnection is a stateful handle to one user's account at one broker.
The public coroutine methods enforce the connection state machine, validate
input and wrap remote failures; subclasses only implement the ``_remote``
hooks that talk to the broker SDK.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, TYPE_CHECKING

from core.logging import get_logger, bind_broker_context
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import (
    BrokerGatewayException,
    NotConnectedError,
    RemoteFailureError,
)
from .orders import validate_order_params
from .ticks import TickChannel

if TYPE_CHECKING:
    from .subscriptions import StreamingSubscriptionManager


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BrokerConnection(ABC):
    """Abstract base class for all broker connection variants."""

    broker_type: str = ""

    def __init__(self, tick_channel: Optional[TickChannel] = None,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self._state = ConnectionState.DISCONNECTED
        self._stream_connected = False
        self._access_token: Optional[str] = None
        self._live_subscriptions: Set[int] = set()
        self._subscriptions: Optional["StreamingSubscriptionManager"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.ticks = tick_channel or TickChannel()
        self.metrics = metrics
        self.logger = bind_broker_context(get_logger(__name__, component="broker"), self.broker_type)

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def stream_connected(self) -> bool:
        return self._stream_connected

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def subscriptions(self) -> Optional["StreamingSubscriptionManager"]:
        return self._subscriptions

    def attach_subscriptions(self, manager: "StreamingSubscriptionManager") -> None:
        """Bind the key's desired-subscription manager to this connection."""
        self._subscriptions = manager
        manager.attach(self)

    def _require_connected(self, operation: str) -> None:
        if self._state != ConnectionState.CONNECTED:
            raise NotConnectedError(
                f"{self.broker_type} connection is {self._state.value}; cannot {operation}",
                operation=operation,
                broker=self.broker_type,
            )

    async def _invoke(self, operation: str, hook: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run a remote hook, wrapping SDK errors as RemoteFailureError. Never retries."""
        try:
            return await hook(*args, **kwargs)
        except BrokerGatewayException:
            raise
        except Exception as e:
            if self.metrics:
                self.metrics.record_remote_failure(self.broker_type, operation)
            self.logger.warning("Remote broker call failed", operation=operation, error=str(e))
            raise RemoteFailureError(
                f"{self.broker_type} {operation} failed: {e}",
                operation=operation,
                broker=self.broker_type,
                cause=e,
            ) from e

    # ------------------------------------------------------------- lifecycle

    async def connect(self, access_token: str) -> None:
        """Authorize with the broker and validate the token with a profile fetch."""
        if self._state == ConnectionState.CONNECTED:
            return
        self._state = ConnectionState.CONNECTING
        self._loop = asyncio.get_running_loop()
        try:
            await self._invoke("connect", self._connect_remote, access_token)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            self._access_token = None
            raise
        self._access_token = access_token
        self._state = ConnectionState.CONNECTED
        self.logger.info("Broker connection established")

    async def disconnect(self) -> None:
        """Release the stream and the session. Idempotent, never raises."""
        if self._stream_connected or self._has_stream():
            try:
                await self._close_stream()
            except Exception as e:
                self.logger.warning("Error closing broker stream", error=str(e))
        if self._state != ConnectionState.DISCONNECTED:
            try:
                await self._disconnect_remote()
            except Exception as e:
                self.logger.warning("Error releasing broker session", error=str(e))
            self.logger.info("Broker connection released")

        self._stream_connected = False
        self._live_subscriptions.clear()
        self._access_token = None
        self._state = ConnectionState.DISCONNECTED
        if self._subscriptions is not None:
            self._subscriptions.detach(self)

    # ------------------------------------------------------------ operations

    async def get_profile(self) -> Dict[str, Any]:
        self._require_connected("get_profile")
        return await self._invoke("get_profile", self._fetch_profile)

    async def get_positions(self) -> Dict[str, Any]:
        self._require_connected("get_positions")
        return await self._invoke("get_positions", self._fetch_positions)

    async def get_holdings(self) -> List[Dict[str, Any]]:
        self._require_connected("get_holdings")
        return await self._invoke("get_holdings", self._fetch_holdings)

    async def get_orders(self) -> List[Dict[str, Any]]:
        self._require_connected("get_orders")
        return await self._invoke("get_orders", self._fetch_orders)

    async def get_instruments(self, exchange: Optional[str] = None) -> List[Dict[str, Any]]:
        self._require_connected("get_instruments")
        return await self._invoke("get_instruments", self._fetch_instruments, exchange)

    async def place_order(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and dispatch an order. Returns {"order_id": ...}."""
        self._require_connected("place_order")
        validate_order_params(params)
        try:
            order_id = await self._invoke("place_order", self._submit_order, dict(params))
        except RemoteFailureError:
            if self.metrics:
                self.metrics.record_order(self.broker_type, "failed")
            raise
        if self.metrics:
            self.metrics.record_order(self.broker_type, "placed")
        self.logger.info("Order placed", order_id=order_id,
                         tradingsymbol=params.get("tradingsymbol"),
                         transaction_type=params.get("transaction_type"),
                         quantity=params.get("quantity"))
        return {"order_id": order_id}

    # ------------------------------------------------------------- streaming

    async def connect_stream(self) -> None:
        """Open the live market data stream. Returns once the connect is initiated."""
        self._require_connected("connect_stream")
        if self._stream_connected or self._has_stream():
            return
        self._loop = asyncio.get_running_loop()
        await self._invoke("connect_stream", self._open_stream)

    async def subscribe(self, instrument_ids: List[int]) -> List[int]:
        """Live-subscribe ids on the open stream; returns ids not already live."""
        self._require_connected("subscribe")
        self._require_stream("subscribe")
        new_ids = [i for i in dict.fromkeys(instrument_ids) if i not in self._live_subscriptions]
        if new_ids:
            await self._invoke("subscribe", self._stream_subscribe, new_ids)
            self._live_subscriptions.update(new_ids)
        return new_ids

    async def unsubscribe(self, instrument_ids: List[int]) -> List[int]:
        """Live-unsubscribe ids on the open stream; returns ids that were live."""
        self._require_connected("unsubscribe")
        self._require_stream("unsubscribe")
        removed = [i for i in dict.fromkeys(instrument_ids) if i in self._live_subscriptions]
        if removed:
            await self._invoke("unsubscribe", self._stream_unsubscribe, removed)
            self._live_subscriptions.difference_update(removed)
        return removed

    def list_subscriptions(self) -> List[int]:
        """Instrument ids currently subscribed on the live stream."""
        return sorted(self._live_subscriptions)

    def _require_stream(self, operation: str) -> None:
        if not self._stream_connected:
            raise NotConnectedError(
                f"{self.broker_type} stream is not connected; cannot {operation}",
                operation=operation,
                broker=self.broker_type,
            )

    async def _handle_stream_connected(self) -> None:
        """Called on the event loop each time the stream (re)connects."""
        self._stream_connected = True
        self._live_subscriptions.clear()
        self.logger.info("Broker stream connected")
        if self.metrics:
            self.metrics.set_stream_status(self.broker_type, self._key_label(), True)
        if self._subscriptions is not None:
            await self._subscriptions.on_stream_connected()

    def _handle_stream_closed(self, code: Any = None, reason: Any = None) -> None:
        """Called on the event loop when the stream drops."""
        self._stream_connected = False
        self._live_subscriptions.clear()
        self.logger.warning("Broker stream closed", code=code, reason=reason)
        if self.metrics:
            self.metrics.set_stream_status(self.broker_type, self._key_label(), False)

    def _publish_ticks(self, ticks: List[Dict[str, Any]]) -> None:
        """Push a batch of ticks into the tick channel. Event loop thread only."""
        dropped = self.ticks.publish_many(ticks)
        if self.metrics:
            self.metrics.record_ticks(self.broker_type, len(ticks), dropped)

    def _key_label(self) -> str:
        return str(self._subscriptions.key) if self._subscriptions is not None else ""

    def _has_stream(self) -> bool:
        """True while a stream object exists, connected or still connecting."""
        return False

    # ----------------------------------------------------------- session flow

    @abstractmethod
    def login_url(self) -> str:
        """URL the user visits to authorize this application at the broker."""
        pass

    @abstractmethod
    async def generate_session(self, request_token: str) -> Dict[str, Any]:
        """Exchange a request token for session data including access_token."""
        pass

    # ---------------------------------------------------------- remote hooks

    @abstractmethod
    async def _connect_remote(self, access_token: str) -> None:
        pass

    @abstractmethod
    async def _disconnect_remote(self) -> None:
        pass

    @abstractmethod
    async def _fetch_profile(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _fetch_positions(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _fetch_holdings(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _fetch_orders(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _fetch_instruments(self, exchange: Optional[str]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _submit_order(self, params: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def _open_stream(self) -> None:
        pass

    @abstractmethod
    async def _close_stream(self) -> None:
        pass

    @abstractmethod
    async def _stream_subscribe(self, instrument_ids: List[int]) -> None:
        pass

    @abstractmethod
    async def _stream_unsubscribe(self, instrument_ids: List[int]) -> None:
        pass
