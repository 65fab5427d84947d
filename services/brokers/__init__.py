"""Broker connection variants, order validation and streaming subscriptions."""

from .base import BrokerConnection, ConnectionState
from .factory import BrokerFactory
from .orders import validate_order_params
from .subscriptions import (
    StreamingSubscriptionManager,
    SubscriptionRegistry,
    validate_instrument_ids,
)
from .ticks import TickChannel
from .zerodha import ZerodhaConnection

__all__ = [
    "BrokerConnection",
    "ConnectionState",
    "BrokerFactory",
    "validate_order_params",
    "StreamingSubscriptionManager",
    "SubscriptionRegistry",
    "validate_instrument_ids",
    "TickChannel",
    "ZerodhaConnection",
]
