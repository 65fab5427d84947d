"""
Session model and store backends.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.database.models import BrokerSessionRecord
from services.sessions.models import BrokerSession, ConnectionKey, utcnow
from services.sessions.store import SqlSessionStore


class TestBrokerSession:

    def test_normalizes_broker_type_and_naive_datetimes(self):
        naive = utcnow().replace(tzinfo=None) + timedelta(hours=1)
        session = BrokerSession(user_id="alice", broker_type=" Zerodha ", access_token="t", expires_at=naive)

        assert session.broker_type == "zerodha"
        assert session.expires_at.tzinfo is not None
        assert session.key == ConnectionKey("alice", "zerodha")

    def test_usable_only_while_active_and_unexpired(self, session_factory):
        session = session_factory("alice")
        assert session.is_usable()
        assert session.is_usable(session.expires_at) is False
        assert session.time_to_expiry(session.expires_at + timedelta(hours=1)) == 0.0

        session.is_active = False
        assert session.is_usable() is False

    def test_summary_never_contains_tokens(self, session_factory):
        summary = session_factory("alice", access_token="secret-token").to_summary()

        assert set(summary) == {"broker_type", "expires_at", "expires_in_seconds", "last_activity", "profile"}
        assert "secret-token" not in str(summary)


class TestInMemorySessionStore:

    @pytest.mark.asyncio
    async def test_find_active_returns_newest(self, session_store, session_factory):
        now = utcnow()
        older = session_factory("alice", created_at=now - timedelta(minutes=10))
        newer = session_factory("alice", created_at=now)
        await session_store.save(newer)
        await session_store.save(older)

        assert await session_store.find_active("alice", "FAKE") is newer

    @pytest.mark.asyncio
    async def test_find_active_returns_expired_but_active_session(self, session_store, session_factory):
        expired = session_factory("alice", expires_in=timedelta(minutes=-1))
        await session_store.save(expired)

        found = await session_store.find_active("alice", "fake")

        assert found is expired
        assert found.is_expired()

    @pytest.mark.asyncio
    async def test_mark_inactive_scoped_to_broker(self, session_store, session_factory):
        await session_store.save(session_factory("alice", broker_type="fake"))
        await session_store.save(session_factory("alice", broker_type="zerodha"))
        await session_store.save(session_factory("bob", broker_type="fake"))

        assert await session_store.mark_inactive("alice", "fake") == 1
        assert await session_store.find_active("alice", "zerodha") is not None

        assert await session_store.mark_inactive("alice") == 1
        assert await session_store.find_active("alice", "zerodha") is None
        assert await session_store.find_active("bob", "fake") is not None

    @pytest.mark.asyncio
    async def test_expire_sweep_deactivates_only_expired(self, session_store, session_factory):
        expired = session_factory("alice", expires_in=timedelta(seconds=-1))
        live = session_factory("bob")
        await session_store.save(expired)
        await session_store.save(live)

        assert await session_store.expire_sweep() == 1
        assert await session_store.expire_sweep() == 0
        assert expired.is_active is False
        assert live.is_active is True

    @pytest.mark.asyncio
    async def test_expire_sweep_at_given_time(self, session_store, session_factory):
        session = session_factory("alice", expires_in=timedelta(hours=1))
        await session_store.save(session)

        assert await session_store.expire_sweep(utcnow() + timedelta(hours=2)) == 1

    @pytest.mark.asyncio
    async def test_list_active_excludes_expired_and_inactive(self, session_store, session_factory):
        now = utcnow()
        await session_store.save(session_factory("alice", broker_type="fake", created_at=now - timedelta(minutes=1)))
        await session_store.save(session_factory("alice", broker_type="zerodha", created_at=now))
        await session_store.save(session_factory("alice", broker_type="other", expires_in=timedelta(seconds=-1)))

        sessions = await session_store.list_active("alice")

        assert [s.broker_type for s in sessions] == ["zerodha", "fake"]

    @pytest.mark.asyncio
    async def test_touch_updates_last_activity(self, session_store, session_factory):
        session = session_factory("alice")
        session.last_activity = utcnow() - timedelta(hours=3)
        await session_store.save(session)

        await session_store.touch("alice", "fake")
        await session_store.touch("nobody", "fake")

        assert utcnow() - session.last_activity < timedelta(minutes=1)


class FakeDbManager:
    """Hands out one mocked AsyncSession per get_session() call."""

    def __init__(self, result):
        self.session = MagicMock()
        self.session.execute = AsyncMock(return_value=result)
        self.session.commit = AsyncMock()
        self.shutdown = AsyncMock()

    @asynccontextmanager
    async def get_session(self):
        yield self.session


class TestSqlSessionStore:

    @pytest.mark.asyncio
    async def test_find_active_maps_record(self):
        expires_at = utcnow() + timedelta(hours=1)
        record = BrokerSessionRecord(
            session_id="s-1", user_id="alice", broker_type="zerodha", access_token="tok",
            refresh_token=None, expires_at=expires_at, is_active=True,
            broker_profile={"user_id": "AB1234"}, last_activity=None, created_at=None,
        )
        result = MagicMock()
        result.scalar_one_or_none.return_value = record
        store = SqlSessionStore(FakeDbManager(result))

        session = await store.find_active("alice", "Zerodha")

        assert session.session_id == "s-1"
        assert session.key == ConnectionKey("alice", "zerodha")
        assert session.expires_at == expires_at
        assert session.broker_profile == {"user_id": "AB1234"}

    @pytest.mark.asyncio
    async def test_find_active_none(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        store = SqlSessionStore(FakeDbManager(result))

        assert await store.find_active("alice", "zerodha") is None

    @pytest.mark.asyncio
    async def test_updates_commit_and_report_rowcount(self):
        result = MagicMock(rowcount=3)
        db = FakeDbManager(result)
        store = SqlSessionStore(db)

        assert await store.mark_inactive("alice") == 3
        assert await store.expire_sweep() == 3
        assert db.session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_save_adds_record(self, session_factory):
        db = FakeDbManager(MagicMock())
        store = SqlSessionStore(db)
        session = session_factory("alice")

        assert await store.save(session) is session
        record = db.session.add.call_args.args[0]
        assert isinstance(record, BrokerSessionRecord)
        assert record.session_id == session.session_id
        assert record.access_token == session.access_token
        db.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_shuts_down_database(self):
        db = FakeDbManager(MagicMock())

        await SqlSessionStore(db).close()

        db.shutdown.assert_awaited_once()
