"""
Session store backends.

The store is the durable record of authorized broker sessions. Connection
handles are derived from it; the store never references them.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update

from core.database.connection import DatabaseManager
from core.database.models import BrokerSessionRecord
from core.logging import get_logger
from .models import BrokerSession, ensure_utc, utcnow


class SessionStore(ABC):
    """Contract the connection core consumes from session persistence."""

    @abstractmethod
    async def find_active(self, user_id: str, broker_type: str) -> Optional[BrokerSession]:
        """Most recent active session for the key, even if already past expiry."""

    @abstractmethod
    async def mark_inactive(self, user_id: str, broker_type: Optional[str] = None) -> int:
        """Deactivate the user's sessions for one broker, or all brokers. Returns rows changed."""

    @abstractmethod
    async def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """Deactivate every active session whose expiry has passed. Returns rows changed."""

    @abstractmethod
    async def save(self, session: BrokerSession) -> BrokerSession:
        """Persist a new session."""

    @abstractmethod
    async def list_active(self, user_id: str) -> List[BrokerSession]:
        """Active, unexpired sessions of a user."""

    @abstractmethod
    async def touch(self, user_id: str, broker_type: str) -> None:
        """Update last_activity on the key's active session."""

    async def close(self) -> None:
        """Release backend resources."""


def _record_to_session(record: BrokerSessionRecord) -> BrokerSession:
    return BrokerSession(
        session_id=record.session_id,
        user_id=record.user_id,
        broker_type=record.broker_type,
        access_token=record.access_token,
        refresh_token=record.refresh_token,
        expires_at=record.expires_at,
        is_active=record.is_active,
        broker_profile=record.broker_profile,
        last_activity=record.last_activity or utcnow(),
        created_at=record.created_at or utcnow(),
    )


class SqlSessionStore(SessionStore):
    """PostgreSQL-backed session store."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = get_logger("session_store", component="session_store")

    async def find_active(self, user_id: str, broker_type: str) -> Optional[BrokerSession]:
        async with self.db_manager.get_session() as session:
            stmt = (
                select(BrokerSessionRecord)
                .where(
                    BrokerSessionRecord.user_id == user_id,
                    BrokerSessionRecord.broker_type == broker_type.lower(),
                    BrokerSessionRecord.is_active.is_(True),
                )
                .order_by(BrokerSessionRecord.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return _record_to_session(record) if record else None

    async def mark_inactive(self, user_id: str, broker_type: Optional[str] = None) -> int:
        async with self.db_manager.get_session() as session:
            stmt = (
                update(BrokerSessionRecord)
                .where(
                    BrokerSessionRecord.user_id == user_id,
                    BrokerSessionRecord.is_active.is_(True),
                )
                .values(is_active=False)
            )
            if broker_type:
                stmt = stmt.where(BrokerSessionRecord.broker_type == broker_type.lower())
            result = await session.execute(stmt)
            await session.commit()

        self.logger.info("Sessions marked inactive", user_id=user_id,
                         broker_type=broker_type or "*", count=result.rowcount)
        return result.rowcount

    async def expire_sweep(self, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now) if now else utcnow()
        async with self.db_manager.get_session() as session:
            stmt = (
                update(BrokerSessionRecord)
                .where(
                    BrokerSessionRecord.is_active.is_(True),
                    BrokerSessionRecord.expires_at <= now,
                )
                .values(is_active=False)
            )
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount:
            self.logger.info("Expired sessions deactivated", count=result.rowcount)
        return result.rowcount

    async def save(self, broker_session: BrokerSession) -> BrokerSession:
        async with self.db_manager.get_session() as session:
            session.add(BrokerSessionRecord(
                session_id=broker_session.session_id,
                user_id=broker_session.user_id,
                broker_type=broker_session.broker_type,
                access_token=broker_session.access_token,
                refresh_token=broker_session.refresh_token,
                expires_at=broker_session.expires_at,
                is_active=broker_session.is_active,
                broker_profile=broker_session.broker_profile,
                last_activity=broker_session.last_activity,
                created_at=broker_session.created_at,
            ))
            await session.commit()
        return broker_session

    async def list_active(self, user_id: str) -> List[BrokerSession]:
        now = utcnow()
        async with self.db_manager.get_session() as session:
            stmt = (
                select(BrokerSessionRecord)
                .where(
                    BrokerSessionRecord.user_id == user_id,
                    BrokerSessionRecord.is_active.is_(True),
                    BrokerSessionRecord.expires_at > now,
                )
                .order_by(BrokerSessionRecord.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_record_to_session(r) for r in result.scalars().all()]

    async def touch(self, user_id: str, broker_type: str) -> None:
        async with self.db_manager.get_session() as session:
            stmt = (
                update(BrokerSessionRecord)
                .where(
                    BrokerSessionRecord.user_id == user_id,
                    BrokerSessionRecord.broker_type == broker_type.lower(),
                    BrokerSessionRecord.is_active.is_(True),
                )
                .values(last_activity=utcnow())
            )
            await session.execute(stmt)
            await session.commit()

    async def close(self) -> None:
        await self.db_manager.shutdown()


class InMemorySessionStore(SessionStore):
    """Process-local store for development runs and tests."""

    def __init__(self):
        self._sessions: Dict[str, BrokerSession] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("session_store", component="session_store")

    async def find_active(self, user_id: str, broker_type: str) -> Optional[BrokerSession]:
        broker_type = broker_type.lower()
        candidates = [
            s for s in self._sessions.values()
            if s.user_id == user_id and s.broker_type == broker_type and s.is_active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    async def mark_inactive(self, user_id: str, broker_type: Optional[str] = None) -> int:
        async with self._lock:
            count = 0
            for s in self._sessions.values():
                if s.user_id != user_id or not s.is_active:
                    continue
                if broker_type and s.broker_type != broker_type.lower():
                    continue
                s.is_active = False
                count += 1
        self.logger.info("Sessions marked inactive", user_id=user_id,
                         broker_type=broker_type or "*", count=count)
        return count

    async def expire_sweep(self, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now) if now else utcnow()
        async with self._lock:
            count = 0
            for s in self._sessions.values():
                if s.is_active and s.is_expired(now):
                    s.is_active = False
                    count += 1
        if count:
            self.logger.info("Expired sessions deactivated", count=count)
        return count

    async def save(self, session: BrokerSession) -> BrokerSession:
        async with self._lock:
            self._sessions[session.session_id] = session
        return session

    async def list_active(self, user_id: str) -> List[BrokerSession]:
        now = utcnow()
        active = [s for s in self._sessions.values() if s.user_id == user_id and s.is_usable(now)]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    async def touch(self, user_id: str, broker_type: str) -> None:
        session = await self.find_active(user_id, broker_type)
        if session:
            session.last_activity = utcnow()

    async def close(self) -> None:
        self._sessions.clear()
