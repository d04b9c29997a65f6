# =============================================================================
# File: chatsync/sync/notifications.py
# Description: Notification Dispatcher and server-side fan-out planner
# =============================================================================

"""
Notification Dispatcher

Client side: per-user unread feed over Topic.notifications_for_user(me).
    INSERT -> prepend (capped at the window) and count if unread
    UPDATE -> merge; read-state transitions adjust the counter
    DELETE -> remove
mark_read / mark_all_read are optimistic and idempotent: the local flip
happens first, the store write second, and a failed write is reverted.
The echo of our own write arrives as an UPDATE on an already-read entry
and changes nothing.

Server side: plan_message_notifications / plan_join_notifications decide
which notification rows a store unit of work inserts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from chatsync.chat.enums import NotificationType
from chatsync.chat.models import Chat, Membership, Message, Notification, User
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.common.base.base_model import utc_now
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.infra.metrics.realtime_metrics import full_fetches_total
from chatsync.realtime.change_feed import ChangeFeedSubscriber, Subscription
from chatsync.realtime.reactive import ReactiveValue
from chatsync.realtime.types import ChangeEvent, ChangeOperation, ResyncRequired, Topic
from chatsync.utils.uuid_utils import generate_uuid

log = logging.getLogger("chatsync.sync.notifications")

MENTION_PATTERN = re.compile(r"(?<![\w@])@([A-Za-z0-9_]{3,32})")


# =============================================================================
# Fan-out planner (server side)
# =============================================================================

def extract_mentions(content: Optional[str]) -> frozenset:
    """Lower-cased usernames mentioned as @username."""
    if not content:
        return frozenset()
    return frozenset(m.lower() for m in MENTION_PATTERN.findall(content))


def plan_message_notifications(
    chat: Chat,
    message: Message,
    memberships: Sequence[Membership],
    users: Dict[uuid.UUID, User],
    now: Optional[datetime] = None,
) -> List[Notification]:
    """
    One notification per recipient of a new message.

    Rules:
        - the sender gets nothing
        - muted chats produce nothing
        - group/channel messages skip recipients with group_notifications off
        - recipients mentioned as @username get a `mention`, others a `message`
        - preview=False replaces the body with a generic text
    """
    if chat.is_muted:
        return []

    now = now or utc_now()
    sender = users.get(message.sender_id)
    sender_name = sender.display_name if sender else "Someone"
    title = sender_name if chat.is_personal else f"{sender_name} in {chat.name or 'a group'}"
    mentioned = extract_mentions(message.content)

    planned: List[Notification] = []
    for membership in memberships:
        if membership.user_id == message.sender_id:
            continue
        recipient = users.get(membership.user_id)
        prefs = recipient.notification_settings if recipient else None
        if prefs is not None and not chat.is_personal and not prefs.group_notifications:
            continue

        is_mention = bool(recipient and recipient.username and recipient.username.lower() in mentioned)
        body = message.preview if prefs is None or prefs.preview else "New message"
        planned.append(Notification(
            id=generate_uuid(),
            user_id=membership.user_id,
            type=(NotificationType.MENTION if is_mention else NotificationType.MESSAGE).value,
            title=title,
            body=body,
            data={
                "chat_id": str(chat.id),
                "message_id": str(message.id),
                "sender_id": str(message.sender_id),
            },
            created_at=now,
        ))
    return planned


def plan_join_notifications(
    chat: Chat,
    added: Sequence[Membership],
    actor: Optional[User],
    now: Optional[datetime] = None,
) -> List[Notification]:
    """A `group_invite` notification for each user added to a group/channel."""
    if chat.is_personal:
        return []

    now = now or utc_now()
    chat_name = chat.name or "a group"
    planned: List[Notification] = []
    for membership in added:
        self_join = actor is not None and actor.id == membership.user_id
        body = f"You joined {chat_name}" if self_join or actor is None else f"{actor.display_name} added you"
        planned.append(Notification(
            id=generate_uuid(),
            user_id=membership.user_id,
            type=NotificationType.GROUP_INVITE.value,
            title=chat_name,
            body=body,
            data={"chat_id": str(chat.id), "chat_type": chat.chat_type.value},
            created_at=now,
        ))
    return planned


# =============================================================================
# Dispatcher (client side)
# =============================================================================

class NotificationDispatcher:
    """
    Per-user notification feed and unread counter.

    The counter is loaded from the store and then maintained from deltas, so
    it also covers unread rows older than the in-memory window.
    """

    def __init__(
        self,
        user_id: uuid.UUID,
        store: ChatStorePort,
        subscriber: ChangeFeedSubscriber,
        config: Optional[RealtimeConfig] = None,
    ):
        self._user_id = user_id
        self._store = store
        self._subscriber = subscriber
        self._window = (config or get_realtime_config()).notification_window
        self._items: List[Notification] = []
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

        self.feed: ReactiveValue[Tuple[Notification, ...]] = ReactiveValue((), "notifications")
        self.unread_count: ReactiveValue[int] = ReactiveValue(0, "unread_count")

    async def start(self) -> None:
        self._subscription = await self._subscriber.subscribe(Topic.notifications_for_user(self._user_id))
        await self.full_fetch()
        self._consumer = asyncio.create_task(self._consume(self._subscription), name="chatsync-notifications")

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None

    async def _consume(self, subscription: Subscription) -> None:
        async for item in subscription:
            try:
                if isinstance(item, ResyncRequired):
                    await self.full_fetch()
                else:
                    self.apply(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Notification feed failed to apply {item}: {e}", exc_info=True)

    async def full_fetch(self) -> None:
        full_fetches_total.labels(scope="notifications").inc()
        items = await self._store.list_notifications(self._user_id, self._window)
        unread = await self._store.count_unread(self._user_id)
        self._items = list(items[: self._window])
        self._publish(unread)

    # =========================================================================
    # Deltas
    # =========================================================================

    def apply(self, event: ChangeEvent) -> None:
        unread = self.unread_count.value

        if event.op == ChangeOperation.INSERT:
            notification: Notification = event.after
            if self._find(notification.id) is not None:
                return
            self._items.insert(0, notification)
            del self._items[self._window:]
            if not notification.is_read:
                unread += 1

        elif event.op == ChangeOperation.UPDATE:
            notification = event.after
            index = self._find(notification.id)
            if index is None:
                return
            held = self._items[index]
            if held.is_read != notification.is_read:
                unread += -1 if notification.is_read else 1
            self._items[index] = notification

        else:
            index = self._find(event.before.id)
            if index is None:
                return
            if not self._items[index].is_read:
                unread -= 1
            del self._items[index]

        self._publish(unread)

    # =========================================================================
    # Commands
    # =========================================================================

    async def mark_read(self, notification_id: uuid.UUID) -> None:
        """Mark one notification read. Repeating it is a no-op."""
        index = self._find(notification_id)
        if index is None:
            changed = await self._store.mark_notifications_read(self._user_id, [notification_id])
            if changed:
                self._publish(self.unread_count.value - changed)
            return

        held = self._items[index]
        if held.is_read:
            return

        self._items[index] = held.model_copy(update={"is_read": True})
        self._publish(self.unread_count.value - 1)
        try:
            await self._store.mark_notifications_read(self._user_id, [notification_id])
        except Exception:
            self._revert(notification_id, held, 1)
            raise

    async def mark_all_read(self) -> None:
        previous_items = list(self._items)
        previous_unread = self.unread_count.value
        if previous_unread == 0 and all(n.is_read for n in previous_items):
            return

        self._items = [n if n.is_read else n.model_copy(update={"is_read": True}) for n in self._items]
        self._publish(0)
        try:
            await self._store.mark_notifications_read(self._user_id, None)
        except Exception:
            self._items = previous_items
            self._publish(previous_unread)
            raise

    # =========================================================================
    # Helpers
    # =========================================================================

    def _find(self, notification_id: uuid.UUID) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.id == notification_id:
                return index
        return None

    def _revert(self, notification_id: uuid.UUID, held: Notification, restored: int) -> None:
        index = self._find(notification_id)
        if index is not None and self._items[index].is_read:
            self._items[index] = held
            self._publish(self.unread_count.value + restored)

    def _publish(self, unread: int) -> None:
        self.feed._set(tuple(self._items))
        if unread != self.unread_count.value:
            self.unread_count._set(max(0, unread))

    def unread(self) -> Iterable[Notification]:
        return (n for n in self._items if not n.is_read)
