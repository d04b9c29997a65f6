# =============================================================================
# File: chatsync/realtime/change_feed.py
# Description: Change-Feed Subscriber (one logical subscription per topic)
# =============================================================================

"""
ChangeFeedSubscriber

Architecture:
    transport channel (per topic)
            ↓  raw {operation, table, before?, after?}
    pump task: parse_change() → validated ChangeEvent
            ↓  malformed payloads logged + counted + dropped
    Subscription queue → owning reconciler (single consumer)

Each subscription is an independent unit of failure: its pump task owns
the transport channel and reconnects with exponential backoff (doubling,
capped, jittered). After a reconnect the pump emits ResyncRequired so the
owner refetches, since the transport does not replay gaps.

Subscription.close() is synchronous: once it returns, iteration ends and
nothing queued before the close is delivered.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, Optional

from chatsync.chat.ports.change_feed_transport_port import ChangeFeedTransportPort, TransportChannel
from chatsync.common.exceptions.exceptions import MalformedChangeError, TransportInterruptedError
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.infra.metrics.realtime_metrics import (
    change_events_dropped_total,
    change_events_malformed_total,
    change_events_received_total,
    subscription_reconnects_total,
    subscription_resyncs_total,
    subscriptions_active,
)
from chatsync.realtime.types import ChangeEvent, FeedItem, ResyncRequired, Topic, parse_change
from chatsync.utils.uuid_utils import generate_uuid_str

log = logging.getLogger("chatsync.realtime.change_feed")

_CLOSED = object()


def compute_backoff(
    failures: int,
    config: RealtimeConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before reconnect attempt number `failures` (1-based)."""
    delay = config.reconnect_initial_delay * (config.reconnect_backoff_factor ** max(failures - 1, 0))
    delay = min(delay, config.reconnect_max_delay)
    jitter = delay * config.reconnect_jitter * (2 * rand() - 1)
    return min(config.reconnect_max_delay, max(0.0, delay + jitter))


class Subscription:
    """
    Typed channel for one topic.

    Usage:
        sub = await subscriber.subscribe(Topic.messages_in_chat(chat_id))
        async for item in sub:
            if isinstance(item, ResyncRequired): ...
            else: apply(item)
        sub.close()
    """

    def __init__(self, topic: Topic, queue_size: int):
        self.id = generate_uuid_str()
        self.topic = topic
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._pump: Optional[asyncio.Task] = None
        self._on_close: Optional[Callable[["Subscription"], None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, item: FeedItem) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Slow consumer: discard the backlog and force a refetch
            dropped = self._drain()
            change_events_dropped_total.labels(table=self.topic.table.value).inc(dropped)
            subscription_resyncs_total.labels(table=self.topic.table.value, reason="overflow").inc()
            log.warning(f"Subscription {self.topic} overflowed, dropped {dropped} events")
            self._queue.put_nowait(ResyncRequired(self.topic, reason="overflow"))

    def _drain(self) -> int:
        count = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            count += 1
        return count

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> FeedItem:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if self._closed or item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop delivery. No item is yielded after this returns."""
        if self._closed:
            return
        self._closed = True
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._drain()
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __repr__(self) -> str:
        return f"Subscription({self.topic}, closed={self._closed})"


class ChangeFeedSubscriber:
    """Opens and supervises per-topic subscriptions over a transport"""

    def __init__(self, transport: ChangeFeedTransportPort, config: Optional[RealtimeConfig] = None):
        self._transport = transport
        self._config = config or get_realtime_config()
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, topic: Topic) -> Subscription:
        """
        Open a subscription. When this returns the channel is already
        listening (or, if the transport is down, a reconnect is scheduled
        and ResyncRequired will follow once it succeeds).
        """
        subscription = Subscription(topic, self._config.subscription_queue_size)
        channel: Optional[TransportChannel] = None
        try:
            channel = await self._transport.open_channel(topic.channel)
        except TransportInterruptedError as e:
            log.warning(f"Initial open of {topic} failed, retrying in background: {e}")

        subscription._on_close = self._forget
        subscription._pump = asyncio.create_task(
            self._pump(subscription, channel, failures=0 if channel else 1),
            name=f"chatsync-feed-{topic.channel}",
        )
        self._subscriptions[subscription.id] = subscription
        subscriptions_active.labels(table=topic.table.value).inc()
        log.debug(f"Subscribed to {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.close()

    def _forget(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            subscriptions_active.labels(table=subscription.topic.table.value).dec()
            log.debug(f"Unsubscribed from {subscription.topic}")

    async def _pump(self, subscription: Subscription, channel: Optional[TransportChannel], failures: int) -> None:
        topic = subscription.topic
        table = topic.table.value
        try:
            while not subscription.closed:
                if channel is None:
                    delay = compute_backoff(failures, self._config)
                    log.info(f"Reconnecting {topic} in {delay:.2f}s (attempt {failures})")
                    await asyncio.sleep(delay)
                    subscription_reconnects_total.labels(table=table).inc()
                    try:
                        channel = await self._transport.open_channel(topic.channel)
                    except TransportInterruptedError as e:
                        failures += 1
                        log.warning(f"Reconnect of {topic} failed: {e}")
                        continue
                    failures = 0
                    subscription_resyncs_total.labels(table=table, reason="reconnected").inc()
                    subscription._deliver(ResyncRequired(topic))

                try:
                    async for payload in channel:
                        self._handle_payload(subscription, payload)
                    raise TransportInterruptedError(f"Channel {topic.channel} ended")
                except TransportInterruptedError as e:
                    log.warning(f"Change feed for {topic} interrupted: {e}")
                    failures = 1
                    await self._close_channel(channel)
                    channel = None
        finally:
            if channel is not None:
                await self._close_channel(channel)

    def _handle_payload(self, subscription: Subscription, payload: Dict) -> None:
        topic = subscription.topic
        try:
            event = parse_change(payload)
        except MalformedChangeError as e:
            change_events_malformed_total.labels(table=topic.table.value).inc()
            log.warning(f"Dropped malformed change on {topic}: {e}")
            return

        if event.table != topic.table:
            change_events_malformed_total.labels(table=topic.table.value).inc()
            log.warning(f"Dropped {event.table.value} change routed to {topic}")
            return

        change_events_received_total.labels(table=event.table.value, operation=event.op.value).inc()
        subscription._deliver(event)

    async def _close_channel(self, channel: TransportChannel) -> None:
        try:
            await channel.close()
        except TransportInterruptedError as e:
            log.debug(f"Ignoring error while closing channel: {e}")


__all__ = [
    "ChangeEvent",
    "ChangeFeedSubscriber",
    "ResyncRequired",
    "Subscription",
    "compute_backoff",
]
