# Enhanced structured logging with multi-channel support
from typing import Optional, Dict, Any

import structlog

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
    get_trading_logger,
    get_market_data_logger,
    get_audit_logger,
    get_monitoring_logger,
    get_error_logger,
    get_database_logger,
)


def configure_logging(settings: Settings) -> None:
    """Configure the logging system (idempotent)."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def bind_broker_context(logger: structlog.BoundLogger, broker: str, user_id: Optional[str] = None) -> structlog.BoundLogger:
    """Bind broker context consistently to a logger.

    Adds `broker` and optionally `user_id`.
    Returns a new BoundLogger with the context applied.
    """
    ctx: Dict[str, Any] = {"broker": broker}
    if user_id:
        ctx["user_id"] = user_id
    return logger.bind(**ctx)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


def get_trading_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a trading logger safely."""
    return get_trading_logger(name)


def get_market_data_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a market data logger safely."""
    return get_market_data_logger(name)


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an audit logger safely."""
    return get_audit_logger(name)


def get_monitoring_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a monitoring logger safely."""
    return get_monitoring_logger(name)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger safely."""
    return get_error_logger(name)


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a database logger safely."""
    return get_database_logger(name)


__all__ = [
    "LogChannel",
    "configure_logging",
    "get_logger",
    "bind_broker_context",
    "get_statistics",
    "get_channel_logger",
    "get_trading_logger_safe",
    "get_market_data_logger_safe",
    "get_audit_logger_safe",
    "get_monitoring_logger_safe",
    "get_error_logger_safe",
    "get_database_logger_safe",
]
