import asyncio
import functools
from typing import Any, Callable, Dict, List, Optional

from kiteconnect import KiteConnect, KiteTicker

from core.config.settings import ZerodhaSettings
from core.logging import get_market_data_logger_safe
from core.monitoring import PrometheusMetricsCollector
from .base import BrokerConnection
from .ticks import TickChannel


class ZerodhaConnection(BrokerConnection):
    """
    Zerodha Kite Connect account handle.

    REST calls go through KiteConnect on the default executor; live data
    comes from a KiteTicker running on its own thread, whose callbacks are
    marshalled back onto the event loop.
    """

    broker_type = "zerodha"

    def __init__(self, settings: ZerodhaSettings,
                 tick_channel: Optional[TickChannel] = None,
                 metrics: Optional[PrometheusMetricsCollector] = None,
                 kite_factory: Callable[..., Any] = KiteConnect,
                 ticker_factory: Callable[..., Any] = KiteTicker):
        super().__init__(tick_channel=tick_channel, metrics=metrics)
        self.api_key = settings.api_key
        self.api_secret = settings.api_secret
        self.ticker_mode = settings.ticker_mode
        self._kite_factory = kite_factory
        self._ticker_factory = ticker_factory
        self._kite = None
        self._kws = None
        self.market_logger = get_market_data_logger_safe("zerodha_stream")

    async def _run_sync(self, func, *args, **kwargs):
        """Run a blocking Kite SDK call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    # ----------------------------------------------------------- session flow

    def login_url(self) -> str:
        return self._kite_factory(api_key=self.api_key).login_url()

    async def generate_session(self, request_token: str) -> Dict[str, Any]:
        kite = self._kite_factory(api_key=self.api_key)
        return await self._invoke(
            "generate_session",
            self._run_sync,
            kite.generate_session,
            request_token,
            api_secret=self.api_secret,
        )

    # ------------------------------------------------------------------ REST

    async def _connect_remote(self, access_token: str) -> None:
        kite = self._kite_factory(api_key=self.api_key)
        kite.set_access_token(access_token)
        profile = await self._run_sync(kite.profile)
        self._kite = kite
        self.logger.info("Kite access token validated", user_name=profile.get("user_name"))

    async def _disconnect_remote(self) -> None:
        self._kite = None

    async def _fetch_profile(self) -> Dict[str, Any]:
        return await self._run_sync(self._kite.profile)

    async def _fetch_positions(self) -> Dict[str, Any]:
        return await self._run_sync(self._kite.positions)

    async def _fetch_holdings(self) -> List[Dict[str, Any]]:
        return await self._run_sync(self._kite.holdings)

    async def _fetch_orders(self) -> List[Dict[str, Any]]:
        return await self._run_sync(self._kite.orders)

    async def _fetch_instruments(self, exchange: Optional[str]) -> List[Dict[str, Any]]:
        if exchange:
            return await self._run_sync(self._kite.instruments, exchange)
        return await self._run_sync(self._kite.instruments)

    async def _submit_order(self, params: Dict[str, Any]) -> str:
        variety = params.pop("variety")
        return await self._run_sync(self._kite.place_order, variety=variety, **params)

    # ------------------------------------------------------------- streaming

    def _has_stream(self) -> bool:
        return self._kws is not None

    async def _open_stream(self) -> None:
        self._kws = self._ticker_factory(self.api_key, self._access_token)
        self._assign_callbacks()
        try:
            self._kws.connect(threaded=True)
        except Exception:
            # Leave no half-open ticker behind
            self._kws = None
            raise
        self.market_logger.info("Kite ticker connecting", mode=self.ticker_mode)

    async def _close_stream(self) -> None:
        kws, self._kws = self._kws, None
        if kws is not None:
            kws.close(1000, "Connection released")

    async def _stream_subscribe(self, instrument_ids: List[int]) -> None:
        self._kws.subscribe(instrument_ids)
        self._kws.set_mode(self._mode(), instrument_ids)

    async def _stream_unsubscribe(self, instrument_ids: List[int]) -> None:
        self._kws.unsubscribe(instrument_ids)

    def _mode(self) -> str:
        return {
            "ltp": self._kws.MODE_LTP,
            "quote": self._kws.MODE_QUOTE,
            "full": self._kws.MODE_FULL,
        }[self.ticker_mode]

    def _assign_callbacks(self):
        """Assigns the handler methods to the KiteTicker instance."""
        self._kws.on_ticks = self._on_ticks
        self._kws.on_connect = self._on_connect
        self._kws.on_close = self._on_close
        self._kws.on_error = self._on_error
        self._kws.on_reconnect = self._on_reconnect
        self._kws.on_noreconnect = self._on_noreconnect

    # KiteTicker callbacks run on the ticker's thread

    def _loop_alive(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def _on_ticks(self, ws, ticks: List[Dict[str, Any]]):
        if self._loop_alive():
            self._loop.call_soon_threadsafe(self._publish_ticks, ticks)

    def _on_connect(self, ws, response):
        if self._loop_alive():
            asyncio.run_coroutine_threadsafe(self._handle_stream_connected(), self._loop)

    def _on_close(self, ws, code, reason):
        if self._loop_alive():
            self._loop.call_soon_threadsafe(self._handle_stream_closed, code, reason)

    def _on_error(self, ws, code, reason):
        self.market_logger.error("Kite ticker error", code=code, reason=str(reason))

    def _on_reconnect(self, ws, attempts_count):
        self.market_logger.warning("Kite ticker reconnecting", attempt=attempts_count)

    def _on_noreconnect(self, ws):
        self.market_logger.error("Kite ticker gave up reconnecting")
        if self._loop_alive():
            self._loop.call_soon_threadsafe(self._handle_reconnect_exhausted, ws)

    def _handle_reconnect_exhausted(self, ws) -> None:
        """Forget the dead ticker so connect_stream can open a fresh one."""
        if self._kws is ws:
            self._kws = None
        self._handle_stream_closed(None, "reconnect exhausted")
