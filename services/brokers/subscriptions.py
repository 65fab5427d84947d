"""
Desired streaming subscriptions per connection key.

The desired set survives connection replacement: whichever connection is
attached to the key replays it every time its stream (re)connects.
"""

from typing import Any, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from core.logging import get_market_data_logger_safe
from core.utils.exceptions import BrokerGatewayException, InvalidArgumentError
from services.sessions.models import ConnectionKey

if TYPE_CHECKING:
    from .base import BrokerConnection


def validate_instrument_ids(instrument_ids: Any) -> List[int]:
    """Require a non-empty list of positive integer instrument ids."""
    if not isinstance(instrument_ids, (list, tuple)) or not instrument_ids:
        raise InvalidArgumentError(
            "Instruments must be a non-empty list of instrument ids",
            field="instruments",
            value=instrument_ids,
        )
    for instrument_id in instrument_ids:
        if isinstance(instrument_id, bool) or not isinstance(instrument_id, int) or instrument_id <= 0:
            raise InvalidArgumentError(
                f"Invalid instrument id: {instrument_id!r}",
                field="instruments",
                value=instrument_id,
            )
    return list(dict.fromkeys(instrument_ids))


class StreamingSubscriptionManager:
    """Desired subscription set for one ConnectionKey."""

    def __init__(self, key: ConnectionKey):
        self.key = key
        self._desired: Set[int] = set()
        self._connection: Optional["BrokerConnection"] = None
        self.logger = get_market_data_logger_safe("subscriptions").bind(key=str(key))

    @property
    def connection(self) -> Optional["BrokerConnection"]:
        return self._connection

    def attach(self, connection: "BrokerConnection") -> None:
        self._connection = connection

    def detach(self, connection: "BrokerConnection") -> None:
        # A replaced connection must not unhook its successor
        if self._connection is connection:
            self._connection = None

    def _streaming(self) -> bool:
        conn = self._connection
        return conn is not None and conn.is_connected and conn.stream_connected

    async def subscribe(self, instrument_ids: Iterable[int]) -> List[int]:
        """Add ids to the desired set; live-subscribes the new ones if streaming."""
        ids = validate_instrument_ids(instrument_ids)
        new_ids = [i for i in ids if i not in self._desired]
        if not new_ids:
            return []

        self._desired.update(new_ids)
        if self._streaming():
            try:
                await self._connection.subscribe(new_ids)
            except BrokerGatewayException:
                self._desired.difference_update(new_ids)
                raise
            self.logger.info("Subscribed instruments", count=len(new_ids))
        else:
            self.logger.info("Subscriptions pending stream connect", count=len(new_ids))
        return new_ids

    async def unsubscribe(self, instrument_ids: Iterable[int]) -> List[int]:
        """Remove ids from the desired set; live-unsubscribes them if streaming."""
        ids = validate_instrument_ids(instrument_ids)
        removed = [i for i in ids if i in self._desired]
        if not removed:
            return []

        self._desired.difference_update(removed)
        if self._streaming():
            try:
                await self._connection.unsubscribe(removed)
            except BrokerGatewayException:
                self._desired.update(removed)
                raise
        self.logger.info("Unsubscribed instruments", count=len(removed))
        return removed

    async def on_stream_connected(self) -> None:
        """Replay the whole desired set on a freshly (re)connected stream."""
        if not self._desired or not self._streaming():
            return
        ids = sorted(self._desired)
        try:
            await self._connection.subscribe(ids)
            self.logger.info("Resubscribed desired instruments", count=len(ids))
        except BrokerGatewayException as e:
            # Desired set is kept; the next reconnect replays it again
            self.logger.error("Resubscribe after stream connect failed",
                              count=len(ids), error=str(e))

    def list_subscriptions(self) -> List[int]:
        return sorted(self._desired)

    def clear(self) -> None:
        self._desired.clear()

    def __len__(self) -> int:
        return len(self._desired)


class SubscriptionRegistry:
    """Owns one StreamingSubscriptionManager per ConnectionKey."""

    def __init__(self):
        self._managers: Dict[ConnectionKey, StreamingSubscriptionManager] = {}

    def get(self, key: ConnectionKey) -> StreamingSubscriptionManager:
        manager = self._managers.get(key)
        if manager is None:
            manager = StreamingSubscriptionManager(key)
            self._managers[key] = manager
        return manager

    def peek(self, key: ConnectionKey) -> Optional[StreamingSubscriptionManager]:
        return self._managers.get(key)

    def discard(self, key: ConnectionKey) -> None:
        """Drop the key's desired set entirely."""
        manager = self._managers.pop(key, None)
        if manager is not None:
            manager.clear()

    def keys(self) -> List[ConnectionKey]:
        return list(self._managers)

    def __len__(self) -> int:
        return len(self._managers)
