"""Broker session models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat timezone-naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ConnectionKey:
    """Pool identity of one user's connection to one broker."""
    user_id: str
    broker_type: str

    def __post_init__(self):
        object.__setattr__(self, "broker_type", self.broker_type.strip().lower())

    def __str__(self) -> str:
        return f"{self.user_id}:{self.broker_type}"


@dataclass
class BrokerSession:
    """An authorized session with a broker, as recorded in the session store."""
    user_id: str
    broker_type: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    is_active: bool = True
    broker_profile: Optional[Dict[str, Any]] = None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.broker_type = self.broker_type.strip().lower()
        self.expires_at = ensure_utc(self.expires_at)
        self.last_activity = ensure_utc(self.last_activity)
        self.created_at = ensure_utc(self.created_at)

    @property
    def key(self) -> ConnectionKey:
        return ConnectionKey(self.user_id, self.broker_type)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) if now else utcnow()
        return now >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """A session is usable only while active and unexpired."""
        return self.is_active and not self.is_expired(now)

    def time_to_expiry(self, now: Optional[datetime] = None) -> float:
        """Seconds until expiry, never negative."""
        now = ensure_utc(now) if now else utcnow()
        return max(0.0, (self.expires_at - now).total_seconds())

    def to_summary(self) -> Dict[str, Any]:
        """Public view of the session; never includes tokens."""
        return {
            "broker_type": self.broker_type,
            "expires_at": self.expires_at.isoformat(),
            "expires_in_seconds": int(self.time_to_expiry()),
            "last_activity": self.last_activity.isoformat(),
            "profile": self.broker_profile,
        }
