# Structured exception hierarchy for the broker gateway

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class BrokerGatewayException(Exception):
    """Base exception for all broker gateway specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)


# Session Errors
class SessionError(BrokerGatewayException):
    """Base class for errors about a (user, broker) session"""

    def __init__(self, message: str, user_id: str, broker_type: str, **kwargs):
        super().__init__(message, **kwargs)
        self.user_id = user_id
        self.broker_type = broker_type


class NotAuthenticatedError(SessionError):
    """No active session exists for the (user, broker) key"""
    pass


class SessionExpiredError(SessionError):
    """A session exists but is past its expiry"""

    def __init__(self, message: str, user_id: str, broker_type: str,
                 expires_at: Optional[datetime] = None, **kwargs):
        super().__init__(message, user_id, broker_type, **kwargs)
        self.expires_at = expires_at


# Connection Errors
class NotConnectedError(BrokerGatewayException):
    """Operation attempted before a successful connect handshake"""

    def __init__(self, message: str, operation: str, broker: str, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.broker = broker


class RemoteFailureError(BrokerGatewayException):
    """The broker service returned an error or could not be reached"""

    def __init__(self, message: str, operation: str, broker: str,
                 cause: Optional[BaseException] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.broker = broker
        self.cause = cause


class PoolClosedError(BrokerGatewayException):
    """The connection pool no longer accepts new work"""
    pass


# Validation Errors
class InvalidArgumentError(BrokerGatewayException):
    """Malformed order or subscription input, rejected before any remote call"""

    def __init__(self, message: str, field: str, value: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value


class UnsupportedBrokerError(InvalidArgumentError):
    """No connection variant is registered for the broker type"""

    def __init__(self, message: str, broker_type: str, **kwargs):
        super().__init__(message, field="broker_type", value=broker_type, **kwargs)
        self.broker_type = broker_type


# Shutdown Errors
class ShutdownTimeoutError(BrokerGatewayException):
    """A cleanup task exceeded its individual bound"""

    def __init__(self, message: str, task_name: str, timeout: float, **kwargs):
        super().__init__(message, **kwargs)
        self.task_name = task_name
        self.timeout = timeout


class ShutdownForcedError(BrokerGatewayException):
    """The global shutdown deadline elapsed with tasks still outstanding"""

    def __init__(self, message: str, outstanding: list, **kwargs):
        super().__init__(message, **kwargs)
        self.outstanding = outstanding


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if isinstance(error, BrokerGatewayException):
        if error.details:
            context["error_details"] = error.details
        if isinstance(error, SessionError):
            context["user_id"] = error.user_id
            context["broker_type"] = error.broker_type
        if isinstance(error, (NotConnectedError, RemoteFailureError)):
            context["broker"] = error.broker
        if isinstance(error, InvalidArgumentError):
            context["field"] = error.field
        if isinstance(error, RemoteFailureError) and error.cause is not None:
            context["cause"] = f"{type(error.cause).__name__}: {error.cause}"

    if additional_context:
        context.update(additional_context)

    return context
