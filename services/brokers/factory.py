from typing import Callable, Dict, List, Optional

from core.config.settings import Settings
from core.logging import get_logger
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import UnsupportedBrokerError
from .base import BrokerConnection
from .ticks import TickChannel
from .zerodha import ZerodhaConnection

logger = get_logger(__name__, component="broker")

BrokerBuilder = Callable[[Settings, Optional[PrometheusMetricsCollector]], BrokerConnection]


def _tick_channel(settings: Settings) -> TickChannel:
    return TickChannel(
        maxsize=settings.streaming.queue_maxsize,
        overflow_policy=settings.streaming.overflow_policy,
    )


def build_zerodha(settings: Settings, metrics: Optional[PrometheusMetricsCollector]) -> BrokerConnection:
    return ZerodhaConnection(settings.zerodha, tick_channel=_tick_channel(settings), metrics=metrics)


class BrokerFactory:
    """Registry of broker connection variants keyed by broker tag."""

    def __init__(self, settings: Settings, metrics: Optional[PrometheusMetricsCollector] = None,
                 register_defaults: bool = True):
        self._settings = settings
        self._metrics = metrics
        self._builders: Dict[str, BrokerBuilder] = {}
        if register_defaults:
            self.register("zerodha", build_zerodha)

    def register(self, tag: str, builder: BrokerBuilder) -> None:
        """Register (or replace) the builder for a broker tag."""
        tag = tag.strip().lower()
        self._builders[tag] = builder
        logger.debug("Broker variant registered", broker=tag)

    def supported_brokers(self) -> List[str]:
        return sorted(self._builders)

    def is_supported(self, broker_type: str) -> bool:
        return broker_type.strip().lower() in self._builders

    def create(self, broker_type: str) -> BrokerConnection:
        """Build a new, disconnected connection for the broker type."""
        tag = broker_type.strip().lower()
        builder = self._builders.get(tag)
        if builder is None:
            raise UnsupportedBrokerError(
                f"Unsupported broker: {broker_type}. Supported: {self.supported_brokers()}",
                broker_type=broker_type,
            )
        return builder(self._settings, self._metrics)
