"""Broker session establishment and logout."""

from datetime import timedelta
from typing import Any, Dict, Optional

from core.config.settings import Settings
from core.logging import get_audit_logger_safe
from core.utils.exceptions import InvalidArgumentError, RemoteFailureError
from services.brokers.factory import BrokerFactory
from services.connections.pool import ConnectionPool
from .models import BrokerSession, ConnectionKey, utcnow
from .store import SessionStore


class SessionService:
    """Creates and revokes authorized broker sessions for users."""

    def __init__(self, settings: Settings, session_store: SessionStore,
                 broker_factory: BrokerFactory, pool: ConnectionPool):
        self.settings = settings
        self.session_store = session_store
        self.broker_factory = broker_factory
        self.pool = pool
        self.audit_logger = get_audit_logger_safe("sessions")

    def get_login_url(self, broker_type: str) -> str:
        """URL where the user authorizes this application at the broker."""
        return self.broker_factory.create(broker_type).login_url()

    def _session_ttl(self) -> timedelta:
        # Kite access tokens are valid for one trading day
        return timedelta(hours=self.settings.zerodha.session_ttl_hours)

    async def establish_session(self, user_id: str, broker_type: str, request_token: str) -> BrokerSession:
        """
        Exchange a request token for an access token and store the session.

        The new token is validated with a profile fetch on a throwaway
        connection; the pooled connection for the key, if any, is released so
        the next call connects with the new token.
        """
        if not user_id:
            raise InvalidArgumentError("user_id is required", field="user_id")
        if not request_token:
            raise InvalidArgumentError("request_token is required", field="request_token")

        key = ConnectionKey(user_id, broker_type)
        connection = self.broker_factory.create(key.broker_type)
        try:
            session_data: Dict[str, Any] = await connection.generate_session(request_token)
            access_token = session_data.get("access_token") if session_data else None
            if not access_token:
                raise RemoteFailureError(
                    f"{key.broker_type} session response carried no access token",
                    operation="generate_session",
                    broker=key.broker_type,
                )
            await connection.connect(access_token)
            profile = await connection.get_profile()
        finally:
            await connection.disconnect()

        now = utcnow()
        session = BrokerSession(
            user_id=user_id,
            broker_type=key.broker_type,
            access_token=access_token,
            refresh_token=session_data.get("refresh_token") or None,
            expires_at=now + self._session_ttl(),
            broker_profile=profile,
            last_activity=now,
            created_at=now,
        )

        # Only the newest session per key stays active
        await self.session_store.mark_inactive(user_id, key.broker_type)
        await self.session_store.save(session)
        await self.pool.release(user_id, key.broker_type, reason="session_replaced")

        self.audit_logger.info("Broker session established",
                               user_id=user_id, broker_type=key.broker_type,
                               session_id=session.session_id,
                               expires_at=session.expires_at.isoformat())
        return session

    async def logout(self, user_id: str, broker_type: Optional[str] = None) -> Dict[str, Any]:
        """Revoke one broker's session for the user, or all of them."""
        if broker_type:
            await self.pool.invalidate(user_id, broker_type)
            released = 1
        else:
            keys = [k for k in self.pool.keys() if k.user_id == user_id]
            keys += [k for k in self.pool.subscriptions.keys()
                     if k.user_id == user_id and k not in keys]
            for key in keys:
                await self.pool.invalidate(key.user_id, key.broker_type)
            await self.session_store.mark_inactive(user_id)
            released = len(keys)

        self.audit_logger.info("Broker session logout", user_id=user_id,
                               broker_type=broker_type or "*", connections=released)
        return {"success": True}
