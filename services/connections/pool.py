"""
Process-wide pool of authorized broker connections.

One handle per (user, broker) key. Creation is serialized per key so
concurrent callers share a single connect handshake; distinct keys never
wait on each other and cache hits take no lock.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.logging import get_logger
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import (
    NotAuthenticatedError,
    PoolClosedError,
    SessionExpiredError,
)
from services.brokers.base import BrokerConnection, ConnectionState
from services.brokers.factory import BrokerFactory
from services.brokers.subscriptions import StreamingSubscriptionManager, SubscriptionRegistry
from services.sessions.models import ConnectionKey, utcnow
from services.sessions.store import SessionStore


@dataclass
class ConnectionHandle:
    """A pooled connection together with the key's subscription manager."""
    key: ConnectionKey
    connection: BrokerConnection
    subscriptions: StreamingSubscriptionManager
    session_expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """Usable from the cache: session unexpired and connection still connected."""
        now = now or utcnow()
        return self.connection.is_connected and now < self.session_expires_at


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Callers holding or waiting on the lock
    users: int = 0


@dataclass
class SweepReport:
    checked: int = 0
    evicted: List[ConnectionKey] = field(default_factory=list)
    failures: Dict[ConnectionKey, str] = field(default_factory=dict)
    # Filled in by the lifecycle coordinator's bulk expiry
    expired_sessions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "expired_sessions": self.expired_sessions,
            "evicted": [str(k) for k in self.evicted],
            "failures": {str(k): v for k, v in self.failures.items()},
        }


class ConnectionPool:
    """Registry of live broker connections keyed by ConnectionKey."""

    def __init__(self, session_store: SessionStore, broker_factory: BrokerFactory,
                 subscriptions: Optional[SubscriptionRegistry] = None,
                 max_handles: int = 1000,
                 connect_timeout: Optional[float] = 30.0,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.session_store = session_store
        self.broker_factory = broker_factory
        self.subscriptions = subscriptions or SubscriptionRegistry()
        self.max_handles = max_handles
        self.connect_timeout = connect_timeout
        self.metrics = metrics

        self._handles: Dict[ConnectionKey, ConnectionHandle] = {}
        self._key_locks: Dict[ConnectionKey, _KeyLock] = {}
        self._key_locks_lock = asyncio.Lock()
        self._closed = False

        self.logger = get_logger(__name__, component="connection_pool")

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._handles)

    def keys(self) -> List[ConnectionKey]:
        return list(self._handles)

    def get(self, user_id: str, broker_type: str) -> Optional[ConnectionHandle]:
        """Cached handle for the key, or None. Never creates."""
        return self._handles.get(ConnectionKey(user_id, broker_type))

    @asynccontextmanager
    async def _key_lock(self, key: ConnectionKey):
        """Serialize work on one key. The entry is dropped once nobody holds or awaits it."""
        async with self._key_locks_lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._key_locks[key] = entry
            entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._key_locks.get(key) is entry:
                del self._key_locks[key]

    async def get_or_create(self, user_id: str, broker_type: str) -> ConnectionHandle:
        """Return the live handle for (user, broker), connecting one if needed."""
        if self._closed:
            raise PoolClosedError("Connection pool is closed for new work")

        key = ConnectionKey(user_id, broker_type)

        # Fast path: no lock on a fresh cached handle
        handle = self._handles.get(key)
        if handle is not None and handle.is_fresh():
            if self.metrics:
                self.metrics.record_cache_hit(key.broker_type)
            return handle

        async with self._key_lock(key):
            # Another caller may have finished the handshake while we waited
            handle = self._handles.get(key)
            if handle is not None:
                if handle.is_fresh():
                    return handle
                await self._evict(key, handle, reason="stale")

            if self._closed:
                raise PoolClosedError("Connection pool is closed for new work")

            return await self._create(key)

    async def _create(self, key: ConnectionKey) -> ConnectionHandle:
        session = await self.session_store.find_active(key.user_id, key.broker_type)
        if session is None:
            raise NotAuthenticatedError(
                f"No active {key.broker_type} session for user {key.user_id}",
                user_id=key.user_id,
                broker_type=key.broker_type,
            )
        if session.is_expired():
            raise SessionExpiredError(
                f"{key.broker_type} session for user {key.user_id} expired at "
                f"{session.expires_at.isoformat()}",
                user_id=key.user_id,
                broker_type=key.broker_type,
                expires_at=session.expires_at,
            )

        connection = self.broker_factory.create(key.broker_type)
        started = time.perf_counter()
        try:
            if self.connect_timeout:
                await asyncio.wait_for(connection.connect(session.access_token), timeout=self.connect_timeout)
            else:
                await connection.connect(session.access_token)
        except BaseException:
            if self.metrics:
                self.metrics.record_handshake(key.broker_type, False, time.perf_counter() - started)
            await connection.disconnect()
            raise

        if self.metrics:
            self.metrics.record_handshake(key.broker_type, True, time.perf_counter() - started)

        manager = self.subscriptions.get(key)
        connection.attach_subscriptions(manager)
        handle = ConnectionHandle(
            key=key,
            connection=connection,
            subscriptions=manager,
            session_expires_at=session.expires_at,
        )
        self._handles[key] = handle
        self._report_size()

        try:
            await self.session_store.touch(key.user_id, key.broker_type)
        except Exception as e:
            self.logger.warning("Failed to record session activity", key=str(key), error=str(e))

        self.logger.info("Broker connection pooled", key=str(key),
                         expires_at=session.expires_at.isoformat(),
                         pending_subscriptions=len(manager))
        return handle

    def _report_size(self) -> None:
        if self.metrics:
            self.metrics.set_active_handles(len(self._handles))
        if len(self._handles) > self.max_handles:
            self.logger.warning("Connection pool above soft limit",
                                handles=len(self._handles), max_handles=self.max_handles)

    async def _evict(self, key: ConnectionKey, handle: ConnectionHandle, reason: str) -> None:
        """Remove a handle from the pool and release its connection."""
        if self._handles.get(key) is handle:
            del self._handles[key]
        self._report_size()
        if self.metrics:
            self.metrics.record_eviction(key.broker_type, reason)
        self.logger.info("Broker connection evicted", key=str(key), reason=reason)
        await handle.connection.disconnect()

    async def release(self, user_id: str, broker_type: str, reason: str = "released") -> bool:
        """Evict the key's handle but keep its desired subscriptions and sessions."""
        key = ConnectionKey(user_id, broker_type)
        async with self._key_lock(key):
            handle = self._handles.get(key)
            if handle is None:
                return False
            await self._evict(key, handle, reason=reason)
            return True

    async def invalidate(self, user_id: str, broker_type: str) -> None:
        """Drop the key's connection, desired subscriptions and stored sessions. Idempotent."""
        key = ConnectionKey(user_id, broker_type)
        # Waits out any handshake in flight for the key, then evicts what it produced
        async with self._key_lock(key):
            handle = self._handles.get(key)
            if handle is not None:
                await self._evict(key, handle, reason="invalidated")
            self.subscriptions.discard(key)
            await self.session_store.mark_inactive(key.user_id, key.broker_type)

    async def sweep(self) -> SweepReport:
        """Evict every handle whose session is missing, inactive or expired."""
        report = SweepReport()
        now = utcnow()
        for key in list(self._handles):
            report.checked += 1
            try:
                async with self._key_lock(key):
                    handle = self._handles.get(key)
                    if handle is None:
                        continue
                    session = await self.session_store.find_active(key.user_id, key.broker_type)
                    if session is not None and session.is_usable(now):
                        handle.session_expires_at = session.expires_at
                        continue
                    await self._evict(key, handle, reason="session_expired")
                    report.evicted.append(key)
            except Exception as e:
                report.failures[key] = f"{type(e).__name__}: {e}"
                self.logger.error("Sweep failed for connection", key=str(key), error=str(e))

        self.logger.info("Connection sweep complete", checked=report.checked,
                         evicted=len(report.evicted), failures=len(report.failures))
        return report

    async def disconnect_all(self) -> int:
        """Release every pooled connection concurrently. Returns handles released."""
        handles = list(self._handles.items())
        self._handles.clear()
        self._report_size()
        if not handles:
            return 0

        results = await asyncio.gather(
            *(handle.connection.disconnect() for _, handle in handles),
            return_exceptions=True,
        )
        released = 0
        for (key, _), result in zip(handles, results):
            if isinstance(result, BaseException):
                self.logger.error("Failed to release connection", key=str(key), error=str(result))
            else:
                released += 1
        self.logger.info("Released pooled connections", released=released, total=len(handles))
        return released

    def close(self) -> None:
        """Stop accepting new get_or_create calls; in-flight ones finish."""
        if not self._closed:
            self._closed = True
            self.logger.info("Connection pool closed for new work", handles=len(self._handles))

    def status(self) -> Dict[str, Any]:
        return {
            "closed": self._closed,
            "handles": len(self._handles),
            "max_handles": self.max_handles,
            "connections": {
                str(key): {
                    "state": handle.state.value,
                    "stream_connected": handle.connection.stream_connected,
                    "subscriptions": len(handle.subscriptions),
                    "session_expires_at": handle.session_expires_at.isoformat(),
                    "created_at": handle.created_at.isoformat(),
                }
                for key, handle in self._handles.items()
            },
        }
