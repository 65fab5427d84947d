"""Broker connection pooling and the trading façade."""

from .pool import ConnectionHandle, ConnectionPool, SweepReport
from .service import TradingService

__all__ = [
    "ConnectionHandle",
    "ConnectionPool",
    "SweepReport",
    "TradingService",
]
