"""Broker session records and their persistence."""

from .models import BrokerSession, ConnectionKey, ensure_utc, utcnow
from .store import SessionStore, SqlSessionStore, InMemorySessionStore

__all__ = [
    "BrokerSession",
    "ConnectionKey",
    "ensure_utc",
    "utcnow",
    "SessionStore",
    "SqlSessionStore",
    "InMemorySessionStore",
]
