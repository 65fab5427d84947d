"""
Pytest configuration and shared fixtures for broker gateway tests.
"""
from datetime import datetime, timedelta
from typing import Optional

import pytest

from core.config.settings import (
    Settings,
    SessionStoreSettings,
    ZerodhaSettings,
    LoggingSettings,
    LifecycleSettings,
)
from services.brokers.factory import BrokerFactory
from services.connections.pool import ConnectionPool
from services.connections.service import TradingService
from services.sessions.models import BrokerSession, utcnow
from services.sessions.store import InMemorySessionStore
from tests.mocks.fake_broker import FakeBrokerBuilder


@pytest.fixture
def test_settings():
    """Test settings configuration."""
    return Settings(
        environment="testing",
        active_brokers="zerodha,fake",
        session_store=SessionStoreSettings(backend="memory"),
        zerodha=ZerodhaSettings(
            api_key="test_key",
            api_secret="test_secret",
            redirect_url="http://localhost/callback",
        ),
        lifecycle=LifecycleSettings(
            sweep_interval_seconds=3600.0,
            shutdown_task_timeout_seconds=5.0,
            shutdown_global_timeout_seconds=8.0,
        ),
        logging=LoggingSettings(
            console_enabled=False,
            file_enabled=False,
            multi_channel_enabled=False,
        ),
    )


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def fake_builder():
    return FakeBrokerBuilder()


@pytest.fixture
def broker_factory(test_settings, fake_builder):
    factory = BrokerFactory(test_settings)
    factory.register("fake", fake_builder)
    return factory


@pytest.fixture
def pool(session_store, broker_factory):
    return ConnectionPool(session_store, broker_factory, connect_timeout=5.0)


@pytest.fixture
def trading_service(pool, session_store):
    return TradingService(pool, session_store)


def make_session(user_id: str = "user-1", broker_type: str = "fake",
                 expires_in: timedelta = timedelta(hours=1),
                 access_token: Optional[str] = None,
                 created_at: Optional[datetime] = None) -> BrokerSession:
    """Build a broker session expiring `expires_in` from now."""
    now = utcnow()
    return BrokerSession(
        user_id=user_id,
        broker_type=broker_type,
        access_token=access_token or f"token-{user_id}",
        expires_at=now + expires_in,
        broker_profile={"user_id": user_id.upper()},
        created_at=created_at or now,
    )


@pytest.fixture
def session_factory():
    return make_session
