"""
Enrichment job notifications.

``JobEventBus`` is an explicit callback registry: consumers subscribe at the
composition root and the queue emits to them directly. A failing subscriber
is logged and never affects queue state.

``RedisJobEventPublisher`` is a subscriber that forwards events to a Redis
pub/sub channel so other processes can follow job progress.
"""

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional, Union

import redis.asyncio as redis

from core.domain.enrichment import JobEventType

logger = logging.getLogger(__name__)


@dataclass
class JobEvent:
    """One job lifecycle notification."""

    event_type: JobEventType
    job_id: str
    owner_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


JobEventHandler = Callable[[JobEvent], Union[Awaitable[None], None]]


class JobEventBus:
    """Registry of job event subscribers."""

    def __init__(self) -> None:
        # None key holds subscribers to every event type
        self._handlers: dict[Optional[JobEventType], list[JobEventHandler]] = {}

    def subscribe(
        self,
        handler: JobEventHandler,
        event_type: Optional[JobEventType] = None,
    ) -> None:
        """Register ``handler`` for one event type, or for all when omitted."""
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: JobEventHandler, event_type: Optional[JobEventType] = None) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscriber_count(self, event_type: Optional[JobEventType] = None) -> int:
        return len(self._handlers.get(event_type, []))

    async def emit(self, event: JobEvent) -> None:
        """Deliver ``event`` to its type's subscribers, then to catch-all subscribers."""
        handlers = self._handlers.get(event.event_type, []) + self._handlers.get(None, [])
        for handler in handlers:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    "Job event handler failed for %s on job %s: %s",
                    event.event_type.value, event.job_id, e,
                    exc_info=True,
                )


class RedisJobEventPublisher:
    """
    Publishes job events to a Redis channel.

    If Redis cannot be reached, events are dropped with a debug log; queue
    processing never depends on Redis.
    """

    def __init__(self, redis_url: str, channel: str = "enrichment:job-events"):
        self.redis_url = redis_url
        self.channel = channel
        self.redis: Optional[redis.Redis] = None
        self._connected = False

    async def connect(self) -> None:
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            await self.redis.ping()
            self._connected = True
            logger.info("Redis connection established for job events")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis: {e}. Job events will not be published.")
            self.redis = None
            self._connected = False

    async def disconnect(self) -> None:
        if self.redis:
            await self.redis.aclose()
            self._connected = False
            logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connected and self.redis is not None

    async def publish(self, event: JobEvent) -> bool:
        """Publish one event. Returns False when it was not delivered."""
        if not self.is_connected:
            logger.debug("Redis not connected, skipping job event %s", event.event_type.value)
            return False

        try:
            await self.redis.publish(self.channel, json.dumps(event.to_dict(), default=str))
            return True
        except Exception as e:
            logger.error(f"Failed to publish job event to Redis: {e}")
            return False

    async def __call__(self, event: JobEvent) -> None:
        await self.publish(event)
