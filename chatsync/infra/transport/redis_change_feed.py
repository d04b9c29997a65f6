# =============================================================================
# File: chatsync/infra/transport/redis_change_feed.py
# Description: Redis Pub/Sub change-feed transport
# =============================================================================

"""
RedisChangeFeedTransport - Redis Pub/Sub for change-feed channels

Pattern: redis-py official async pub/sub
- PUBLISH through the shared client (global connection pool)
- one PubSub connection per open channel (SUBSCRIBE, exact names)
- every channel namespaced as "<prefix>:<topic channel>"

Architecture:
    ChangeFeedPublisher → transport.publish("messages:chat_id=eq.<id>", payload)
                                    ↓
                      Redis PUBLISH chatsync:messages:chat_id=eq.<id>
                                    ↓
           every RedisTransportChannel subscribed to that name
                                    ↓
                      ChangeFeedSubscriber pump → Subscription

Pub/Sub is fire-and-forget: a dropped connection loses whatever was
published meanwhile. The channel raises TransportInterruptedError on any
connection error so the subscriber reconnects and emits ResyncRequired.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatsync.common.exceptions.exceptions import TransportInterruptedError
from chatsync.config.redis_config import RedisConfig, get_redis_config

log = logging.getLogger("chatsync.transport.redis")


class ChangeFeedJSONEncoder(json.JSONEncoder):
    """Custom JSON encoder for change payloads that handles UUID, datetime, Decimal"""

    def default(self, obj):
        if isinstance(obj, UUID):
            return str(obj)
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return str(obj)
        return super().default(obj)


class RedisTransportChannel:
    """One SUBSCRIBEd Redis channel"""

    def __init__(self, pubsub: Any, name: str, poll_timeout: float):
        self._pubsub = pubsub
        self.name = name
        self._poll_timeout = poll_timeout
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[Any]:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except (RedisError, OSError) as e:
                raise TransportInterruptedError(f"Redis channel {self.name} dropped: {e}") from e

            if not message or message.get("type") != "message":
                continue

            data = message["data"]
            data_str = data.decode("utf-8") if isinstance(data, bytes) else data
            try:
                yield json.loads(data_str)
            except json.JSONDecodeError as e:
                log.warning(f"Undecodable payload on {self.name}: {e}")
                # Validation at the subscription boundary rejects it
                yield data_str

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.name)
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            log.debug(f"Error closing Redis channel {self.name}: {e}")
        log.debug(f"Unsubscribed from Redis channel {self.name}")


class RedisChangeFeedTransport:
    """
    Change-feed transport over Redis Pub/Sub.

    Example Usage:
        ```python
        client = await init_global_client()
        transport = RedisChangeFeedTransport(client)

        channel = await transport.open_channel("chats:member_id=eq.<user>")
        await transport.publish("chats:member_id=eq.<user>", payload)
        ```
    """

    def __init__(self, redis_client: redis.Redis, config: Optional[RedisConfig] = None):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client
        self._config = config or get_redis_config()
        self._messages_published = 0

    def _full_name(self, channel: str) -> str:
        return f"{self._config.channel_prefix}:{channel}"

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        name = self._full_name(channel)
        message = json.dumps(payload, cls=ChangeFeedJSONEncoder)
        try:
            receivers = await self._redis.publish(name, message)
        except (RedisError, OSError) as e:
            raise TransportInterruptedError(f"PUBLISH {name} failed: {e}") from e
        self._messages_published += 1
        log.debug(f"Published {len(message)}B to {name} ({receivers} receivers)")

    async def open_channel(self, channel: str) -> RedisTransportChannel:
        name = self._full_name(channel)
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(name)
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise TransportInterruptedError(f"SUBSCRIBE {name} failed: {e}") from e
        log.debug(f"Subscribed to Redis channel {name}")
        return RedisTransportChannel(pubsub, name, self._config.poll_timeout)
