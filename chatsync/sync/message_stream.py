# =============================================================================
# File: chatsync/sync/message_stream.py
# Description: Message Stream Handler - ordered message log of one open chat
# =============================================================================

"""
Message Stream Handler

On open: subscribe to Topic.messages_in_chat(chat), fetch full history
ascending, join sender identity, then consume deltas in delivery order.

    INSERT -> append if created_at >= tail, otherwise sorted insert
    UPDATE -> merge when newer (updated_at, else created_at); an unknown id
              is inserted, so an UPDATE overtaking its INSERT is kept
    DELETE -> remove by id

Scroll-follow: the view reports whether the viewer sits at the tail;
`scroll_to_tail` ticks only for appends made while it does.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from chatsync.chat.models import Message, MessageView, User
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.infra.metrics.realtime_metrics import full_fetches_total, stale_updates_ignored_total
from chatsync.realtime.change_feed import ChangeFeedSubscriber, Subscription
from chatsync.realtime.reactive import ReactiveValue
from chatsync.realtime.types import ChangeEvent, ChangeOperation, ResyncRequired, Topic

log = logging.getLogger("chatsync.sync.message_stream")


def message_order_key(view: MessageView) -> Tuple[datetime, str]:
    return (view.created_at, str(view.id))


def message_version(message: Message) -> datetime:
    """Row image age: last edit, or creation for never-edited rows."""
    return message.updated_at or message.created_at


class MessageLog:
    """Pure ordered log keyed by (created_at, id)"""

    def __init__(self) -> None:
        self._items: List[MessageView] = []
        self._by_id: Dict[uuid.UUID, MessageView] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, message_id: uuid.UUID) -> bool:
        return message_id in self._by_id

    def get(self, message_id: uuid.UUID) -> Optional[MessageView]:
        return self._by_id.get(message_id)

    @property
    def tail(self) -> Optional[MessageView]:
        return self._items[-1] if self._items else None

    def items(self) -> Tuple[MessageView, ...]:
        return tuple(self._items)

    def replace_all(self, views: Iterable[MessageView]) -> None:
        self._items = sorted(views, key=message_order_key)
        self._by_id = {v.id: v for v in self._items}

    def insert(self, view: MessageView) -> bool:
        """
        Add a message. Returns True when it was appended at the tail.
        A redelivered id is merged instead of duplicated.
        """
        if view.id in self._by_id:
            self.update(view.message)
            return False

        self._by_id[view.id] = view
        tail = self.tail
        if tail is None or message_order_key(view) >= message_order_key(tail):
            self._items.append(view)
            return True

        bisect.insort(self._items, view, key=message_order_key)
        return False

    def update(self, message: Message) -> bool:
        """
        Merge a newer image of a held message. Returns False for unknown ids
        and for stale images: older than the held one, or the same age but
        carrying no edit the held image has.
        """
        held = self._by_id.get(message.id)
        if held is None:
            return False
        incoming, current = message_version(message), message_version(held.message)
        if incoming < current:
            return False
        if incoming == current and held.message.is_edited and not message.is_edited:
            return False
        if message.content != held.message.content and not message.is_edited:
            message = message.model_copy(update={"is_edited": True})

        merged = held.model_copy(update={"message": message})
        self._by_id[message.id] = merged
        index = self._index_of(held)
        self._items[index] = merged
        return True

    def remove(self, message_id: uuid.UUID) -> bool:
        held = self._by_id.pop(message_id, None)
        if held is None:
            return False
        del self._items[self._index_of(held)]
        return True

    def _index_of(self, view: MessageView) -> int:
        index = bisect.bisect_left(self._items, message_order_key(view), key=message_order_key)
        if index < len(self._items) and self._items[index].id == view.id:
            return index
        # created_at must never change; fall back to a scan if it did
        for i, item in enumerate(self._items):
            if item.id == view.id:
                return i
        raise KeyError(view.id)


class MessageStreamHandler:
    """
    Owns the message log of one open chat.

    Usage:
        stream = MessageStreamHandler(chat_id, store, subscriber)
        await stream.open()
        stream.messages.value
        stream.set_viewer_at_tail(False)
        stream.close()
    """

    def __init__(self, chat_id: uuid.UUID, store: ChatStorePort, subscriber: ChangeFeedSubscriber):
        self.chat_id = chat_id
        self._store = store
        self._subscriber = subscriber
        self._log = MessageLog()
        self._senders: Dict[uuid.UUID, User] = {}
        self._viewer_at_tail = True
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

        self.messages: ReactiveValue[Tuple[MessageView, ...]] = ReactiveValue((), f"messages:{chat_id}")
        self.scroll_to_tail: ReactiveValue[int] = ReactiveValue(0, f"scroll:{chat_id}")
        self.loaded: ReactiveValue[bool] = ReactiveValue(False, f"messages_loaded:{chat_id}")

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    async def open(self) -> None:
        self._subscription = await self._subscriber.subscribe(Topic.messages_in_chat(self.chat_id))
        await self.full_fetch()
        self._consumer = asyncio.create_task(
            self._consume(self._subscription), name=f"chatsync-messages-{self.chat_id}"
        )

    def close(self) -> None:
        """Unsubscribe synchronously; nothing is applied after this returns."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None

    def set_viewer_at_tail(self, at_tail: bool) -> None:
        self._viewer_at_tail = at_tail

    def forget(self, message_id: uuid.UUID) -> None:
        """Drop a message the store no longer has."""
        if self._log.remove(message_id):
            self._publish()

    async def _consume(self, subscription: Subscription) -> None:
        async for item in subscription:
            try:
                if isinstance(item, ResyncRequired):
                    log.info(f"Message stream resync for chat {self.chat_id} ({item.reason})")
                    await self.full_fetch()
                else:
                    await self.apply(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Message stream failed to apply {item}: {e}", exc_info=True)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def full_fetch(self) -> None:
        full_fetches_total.labels(scope="messages").inc()
        messages = await self._store.list_messages(self.chat_id)
        await self._load_senders(m.sender_id for m in messages)
        self._log.replace_all(self._view(m) for m in messages)
        self._publish()
        if not self.loaded.value:
            self.loaded._set(True)

    async def apply(self, event: ChangeEvent) -> None:
        if event.op == ChangeOperation.DELETE:
            if self._log.remove(event.before.id):
                self._publish()
            return

        message: Message = event.after
        if message.chat_id != self.chat_id:
            log.warning(f"Message {message.id} of chat {message.chat_id} routed to chat {self.chat_id}")
            return

        # An UPDATE overtaking its INSERT carries the full row; add it
        if message.id not in self._log:
            await self._load_senders([message.sender_id])
            appended = self._log.insert(self._view(message))
            self._publish()
            if appended and self._viewer_at_tail:
                self.scroll_to_tail._set(self.scroll_to_tail.value + 1)
            return

        if self._log.update(message):
            self._publish()
        else:
            stale_updates_ignored_total.labels(scope="messages").inc()

    async def _load_senders(self, sender_ids: Iterable[uuid.UUID]) -> None:
        missing: Sequence[uuid.UUID] = [u for u in set(sender_ids) if u not in self._senders]
        if missing:
            self._senders.update(await self._store.get_users(missing))

    def _view(self, message: Message) -> MessageView:
        sender = self._senders.get(message.sender_id)
        return MessageView(
            message=message,
            sender_name=sender.display_name if sender else None,
            sender_avatar_url=sender.avatar_url if sender else None,
        )

    def _publish(self) -> None:
        self.messages._set(self._log.items())
