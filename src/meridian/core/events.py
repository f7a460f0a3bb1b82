"""
Event bus implementation using Redis pub/sub.

Meridian only publishes: trade and settlement events leave the core here
and downstream consumers (persistence, UI broadcast) subscribe on their
own connections.
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis
import structlog

log = structlog.get_logger()


class EventEncoder(json.JSONEncoder):
    """JSON encoder for event payloads (Decimal, datetime, Enum, dataclasses)."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        return super().default(obj)


def encode_event(event: Any) -> str:
    """Serialize a dict or dataclass payload to JSON."""
    if is_dataclass(event) and not isinstance(event, type):
        event = asdict(event)
    return json.dumps(event, cls=EventEncoder)


class EventBus:
    """Redis-backed publisher for component events.

    Usage:
        bus = EventBus(redis_url="redis://localhost:6379")
        await bus.connect()
        await bus.publish("trade.executed.CC/USDC", trade_event)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379") -> None:
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._published = 0

    async def connect(self) -> None:
        """Establish connection to Redis and verify it with a ping."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._redis.ping()
        log.info("event_bus_connected", url=self._redis_url)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
        self._redis = None

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    @property
    def published_count(self) -> int:
        return self._published

    async def publish(self, channel: str, event: Any) -> None:
        """Publish event to channel.

        Args:
            channel: Channel name (e.g., "trade.executed.CC/USDC")
            event: Event data (dict or dataclass)

        Raises:
            RuntimeError: If the bus is not connected.
        """
        if not self._redis:
            raise RuntimeError("EventBus not connected")
        await self._redis.publish(channel, encode_event(event))
        self._published += 1
