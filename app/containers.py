# Application DI container
from dependency_injector import containers, providers
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from services.brokers.factory import BrokerFactory
from services.brokers.subscriptions import SubscriptionRegistry
from services.connections.pool import ConnectionPool
from services.connections.service import TradingService
from services.lifecycle.coordinator import LifecycleCoordinator
from services.sessions.service import SessionService
from services.sessions.store import InMemorySessionStore, SqlSessionStore


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability: Prometheus ---
    prometheus_registry = providers.Singleton(CollectorRegistry)
    prometheus_metrics = providers.Singleton(
        PrometheusMetricsCollector,
        registry=prometheus_registry,
    )

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.postgres_url,
        environment=settings.provided.environment.value,
        schema_management=settings.provided.database.schema_management,
    )

    # Session persistence backend chosen by SESSION_STORE__BACKEND
    session_store = providers.Selector(
        settings.provided.session_store.backend,
        postgres=providers.Singleton(SqlSessionStore, db_manager=db_manager),
        memory=providers.Singleton(InMemorySessionStore),
    )

    # --- Broker connections ---
    broker_factory = providers.Singleton(
        BrokerFactory,
        settings=settings,
        metrics=prometheus_metrics,
    )
    subscription_registry = providers.Singleton(SubscriptionRegistry)
    connection_pool = providers.Singleton(
        ConnectionPool,
        session_store=session_store,
        broker_factory=broker_factory,
        subscriptions=subscription_registry,
        max_handles=settings.provided.connection_pool.max_handles,
        connect_timeout=settings.provided.connection_pool.connect_timeout_seconds,
        metrics=prometheus_metrics,
    )

    # --- Lifecycle ---
    lifecycle_coordinator = providers.Singleton(
        LifecycleCoordinator,
        pool=connection_pool,
        session_store=session_store,
        settings=settings.provided.lifecycle,
        metrics=prometheus_metrics,
    )

    # --- Services ---
    trading_service = providers.Singleton(
        TradingService,
        pool=connection_pool,
        session_store=session_store,
        coordinator=lifecycle_coordinator,
    )
    session_service = providers.Singleton(
        SessionService,
        settings=settings,
        session_store=session_store,
        broker_factory=broker_factory,
        pool=connection_pool,
    )
