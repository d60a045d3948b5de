# docdash/changefeed.py
"""
Row-level change feed over Redis pub/sub.

Every committed row write is published as a ChangeEvent (JSON) on
`{prefix}:{table}`. A subscription owns its own PubSub connection and a
listener task; cancelling the task is what stops delivery, so nothing can be
handed to a callback after `unsubscribe()` returns.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from docdash.config import settings
from docdash.errors import BackendError
from docdash.schemas import ChangeEvent

logger = logging.getLogger(__name__)

OnEvent = Callable[[ChangeEvent], None]


def channel_for(table: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.change_channel_prefix}:{table}"


def matches_filter(event: ChangeEvent, row_filter: Optional[Dict[str, Any]]) -> bool:
    if not row_filter:
        return True
    row = event.row
    return all(str(row.get(key)) == str(value) for key, value in row_filter.items())


class Subscription:
    def __init__(self, table: str, row_filter: Optional[Dict[str, Any]], on_event: OnEvent):
        self.id = str(uuid.uuid4())
        self.table = table
        self.filter = dict(row_filter or {})
        self.on_event = on_event
        self.active = True
        self.pubsub = None
        self.task: Optional[asyncio.Task] = None

    def deliver(self, event: ChangeEvent) -> None:
        """Hand one event to the callback. A failing callback never ends the subscription."""
        if not self.active or not matches_filter(event, self.filter):
            return
        try:
            self.on_event(event)
        except Exception:
            logger.exception("Change handler failed for %s event on %s", event.type.value, self.table)

    def __repr__(self):
        return f"<Subscription {self.table} {self.filter} active={self.active}>"


class ChangeFeed:
    def __init__(self, redis: aioredis.Redis, prefix: Optional[str] = None):
        self._redis = redis
        self._prefix = prefix or settings.change_channel_prefix

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "ChangeFeed":
        return cls(aioredis.from_url(url or settings.redis_url, decode_responses=True))

    async def publish(self, event: ChangeEvent) -> None:
        channel = channel_for(event.table, self._prefix)
        try:
            await self._redis.publish(channel, event.model_dump_json())
        except RedisError as e:
            # the row write is already committed; subscribers will miss this one
            logger.error("Failed to publish %s event on %s: %s", event.type.value, channel, e)

    async def subscribe(self, table: str, row_filter: Optional[Dict[str, Any]], on_event: OnEvent) -> Subscription:
        sub = Subscription(table, row_filter, on_event)
        try:
            sub.pubsub = self._redis.pubsub()
            await sub.pubsub.subscribe(channel_for(table, self._prefix))
        except RedisError as e:
            raise BackendError("subscribe_changes", str(e)) from e
        sub.task = asyncio.create_task(self._listen(sub), name=f"changefeed:{table}:{sub.id}")
        logger.info("Subscribed to %s changes filter=%s", table, sub.filter)
        return sub

    async def _listen(self, sub: Subscription) -> None:
        try:
            async for message in sub.pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning("Dropping undecodable change message on %s: %s", sub.table, e)
                    continue
                sub.deliver(event)
        except asyncio.CancelledError:
            raise
        except RedisError:
            logger.exception("Change feed listener for %s stopped", sub.table)

    async def unsubscribe(self, sub: Subscription) -> None:
        sub.active = False
        if sub.task is not None:
            sub.task.cancel()
            try:
                await sub.task
            except asyncio.CancelledError:
                pass
        if sub.pubsub is not None:
            try:
                await sub.pubsub.unsubscribe()
                await sub.pubsub.aclose()
            except RedisError:
                logger.exception("Failed to close pubsub for %s", sub.table)
        logger.info("Unsubscribed from %s changes filter=%s", sub.table, sub.filter)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            logger.exception("Redis ping failed")
            return False

    async def close(self) -> None:
        await self._redis.aclose()
