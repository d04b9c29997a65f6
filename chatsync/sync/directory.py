# =============================================================================
# File: chatsync/sync/directory.py
# Description: Chat Directory Reconciler - ordered list of the user's chats
# =============================================================================

"""
Chat Directory Reconciler

State:  DirectoryState (superset of all chats the user is a member of)
Input:  full fetch + deltas from Topic.chats_for_member(user)
Output: ReactiveValue handles `chats` (all, sorted) and `visible`
        (active/archived projection further filtered by search text)

Deltas:
    INSERT -> merge then resort
    UPDATE -> merge then resort (ignored if older than the held row)
    DELETE -> remove
Sort key: (is_pinned desc, updated_at desc, id)

Projections never mutate held state: switching view or search text only
recomputes `visible`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from chatsync.chat.enums import DirectoryView, PrivacyLevel
from chatsync.chat.models import Chat, ChatSummary, Message, User
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.infra.metrics.realtime_metrics import full_fetches_total, stale_updates_ignored_total
from chatsync.realtime.change_feed import ChangeFeedSubscriber, Subscription
from chatsync.realtime.reactive import ReactiveValue
from chatsync.realtime.types import ChangeEvent, ChangeOperation, ResyncRequired, Topic

log = logging.getLogger("chatsync.sync.directory")

UNTITLED_CHAT = "Untitled chat"


def directory_sort_key(summary: ChatSummary) -> Tuple[int, float, str]:
    return (0 if summary.is_pinned else 1, -summary.updated_at.timestamp(), str(summary.id))


def summarize_chat(
    chat: Chat,
    counterpart: Optional[User] = None,
    last_message: Optional[Message] = None,
) -> ChatSummary:
    """
    Build a directory entry. Personal chats show the counterpart's live
    identity, filtered through the counterpart's privacy block.
    """
    last_preview = last_message.preview if last_message else None
    last_at = last_message.created_at if last_message else None

    if not chat.is_personal:
        return ChatSummary(
            chat=chat,
            display_name=chat.name or UNTITLED_CHAT,
            display_avatar_url=chat.avatar_url,
            last_message_preview=last_preview,
            last_message_at=last_at,
        )

    if counterpart is None:
        return ChatSummary(
            chat=chat,
            display_name=chat.name or UNTITLED_CHAT,
            last_message_preview=last_preview,
            last_message_at=last_at,
        )

    privacy = counterpart.privacy_settings
    hide_photo = privacy.show_profile_photo == PrivacyLevel.NOBODY
    hide_seen = privacy.show_last_seen == PrivacyLevel.NOBODY
    return ChatSummary(
        chat=chat,
        display_name=counterpart.display_name,
        display_avatar_url=None if hide_photo else counterpart.avatar_url,
        counterpart_id=counterpart.id,
        counterpart_online=None if hide_seen else counterpart.is_online,
        counterpart_last_seen=None if hide_seen else counterpart.last_seen,
        last_message_preview=last_preview,
        last_message_at=last_at,
    )


def project(
    summaries: Iterable[ChatSummary],
    view: DirectoryView = DirectoryView.ACTIVE,
    search: str = "",
) -> Tuple[ChatSummary, ...]:
    """Active/archived view, then case-insensitive substring match on display name."""
    want_archived = view == DirectoryView.ARCHIVED
    needle = search.strip().casefold()
    return tuple(
        s for s in summaries
        if s.is_archived == want_archived and (not needle or needle in s.display_name.casefold())
    )


class DirectoryState:
    """Pure directory state; the reconciler is its single writer"""

    def __init__(self) -> None:
        self._entries: Dict[uuid.UUID, ChatSummary] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chat_id: uuid.UUID) -> bool:
        return chat_id in self._entries

    def get(self, chat_id: uuid.UUID) -> Optional[ChatSummary]:
        return self._entries.get(chat_id)

    def replace_all(self, summaries: Iterable[ChatSummary]) -> None:
        self._entries = {s.id: s for s in summaries}

    def upsert(self, summary: ChatSummary) -> bool:
        """Merge an entry. Returns False when the held entry is newer."""
        held = self._entries.get(summary.id)
        if held is not None and summary.updated_at < held.updated_at:
            return False
        self._entries[summary.id] = summary
        return True

    def remove(self, chat_id: uuid.UUID) -> bool:
        return self._entries.pop(chat_id, None) is not None

    def ordered(self) -> Tuple[ChatSummary, ...]:
        return tuple(sorted(self._entries.values(), key=directory_sort_key))


class ChatDirectoryReconciler:
    """
    Keeps the current user's chat list consistent with the store.

    Usage:
        directory = ChatDirectoryReconciler(user_id, store, subscriber)
        await directory.start()
        directory.chats.value          # all chats, sorted
        directory.set_view(DirectoryView.ARCHIVED)
        directory.visible.value        # projection
        directory.stop()
    """

    def __init__(self, user_id: uuid.UUID, store: ChatStorePort, subscriber: ChangeFeedSubscriber):
        self._user_id = user_id
        self._store = store
        self._subscriber = subscriber
        self._state = DirectoryState()
        self._view = DirectoryView.ACTIVE
        self._search = ""
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

        self.chats: ReactiveValue[Tuple[ChatSummary, ...]] = ReactiveValue((), "chats")
        self.visible: ReactiveValue[Tuple[ChatSummary, ...]] = ReactiveValue((), "visible_chats")
        self.loaded: ReactiveValue[bool] = ReactiveValue(False, "directory_loaded")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe first, then full fetch, so no delta is missed in between."""
        self._subscription = await self._subscriber.subscribe(Topic.chats_for_member(self._user_id))
        await self.full_fetch()
        self._consumer = asyncio.create_task(self._consume(self._subscription), name="chatsync-directory")

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
                    log.info(f"Directory resync for {self._user_id} ({item.reason})")
                    await self.full_fetch()
                else:
                    await self.apply(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Directory failed to apply {item}: {e}", exc_info=True)

    # =========================================================================
    # Projection controls
    # =========================================================================

    @property
    def view(self) -> DirectoryView:
        return self._view

    @property
    def search(self) -> str:
        return self._search

    def set_view(self, view: DirectoryView) -> None:
        self._view = view
        self._publish_visible()

    def set_search(self, text: str) -> None:
        self._search = text
        self._publish_visible()

    def get(self, chat_id: uuid.UUID) -> Optional[ChatSummary]:
        return self._state.get(chat_id)

    def forget(self, chat_id: uuid.UUID) -> None:
        """Drop a stale entry (the store reported the chat as gone)."""
        if self._state.remove(chat_id):
            self._publish()

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def full_fetch(self) -> None:
        full_fetches_total.labels(scope="directory").inc()
        chats = await self._store.list_member_chats(self._user_id)
        last = await self._store.last_messages([c.id for c in chats])
        counterparts = await self._resolve_counterparts([c for c in chats if c.is_personal])

        self._state.replace_all(
            summarize_chat(chat, counterparts.get(chat.id), last.get(chat.id)) for chat in chats
        )
        self._publish()
        if not self.loaded.value:
            self.loaded._set(True)
        log.debug(f"Directory for {self._user_id} loaded {len(chats)} chats")

    async def apply(self, event: ChangeEvent) -> None:
        if event.op == ChangeOperation.DELETE:
            if self._state.remove(event.before.id):
                self._publish()
            return

        chat: Chat = event.after
        held = self._state.get(chat.id)
        if held is not None and chat.updated_at < held.updated_at:
            stale_updates_ignored_total.labels(scope="directory").inc()
            log.debug(f"Ignoring stale update of chat {chat.id}")
            return

        summary = await self._merge(chat, held)
        if self._state.upsert(summary):
            self._publish()

    async def _merge(self, chat: Chat, held: Optional[ChatSummary]) -> ChatSummary:
        refresh_preview = held is None or chat.updated_at > held.updated_at
        last: Optional[Message] = None
        if refresh_preview:
            last = (await self._store.last_messages([chat.id])).get(chat.id)

        counterpart: Optional[User] = None
        if chat.is_personal:
            if held is not None and held.counterpart_id is not None:
                counterpart = (await self._store.get_users([held.counterpart_id])).get(held.counterpart_id)
            else:
                counterpart = (await self._resolve_counterparts([chat])).get(chat.id)

        summary = summarize_chat(chat, counterpart, last)
        if not refresh_preview and held is not None:
            summary = summary.model_copy(update={
                "last_message_preview": held.last_message_preview,
                "last_message_at": held.last_message_at,
            })
        return summary

    async def _resolve_counterparts(self, personal_chats: Sequence[Chat]) -> Dict[uuid.UUID, User]:
        """chat_id -> the other member of each personal chat."""
        other_by_chat: Dict[uuid.UUID, uuid.UUID] = {}
        for chat in personal_chats:
            memberships = await self._store.list_memberships(chat.id)
            others = [m.user_id for m in memberships if m.user_id != self._user_id]
            if others:
                other_by_chat[chat.id] = others[0]

        if not other_by_chat:
            return {}
        users = await self._store.get_users(list(set(other_by_chat.values())))
        return {chat_id: users[u] for chat_id, u in other_by_chat.items() if u in users}

    def _publish(self) -> None:
        self.chats._set(self._state.ordered())
        self._publish_visible()

    def _publish_visible(self) -> None:
        self.visible._set(project(self.chats.value, self._view, self._search))

    def snapshot(self) -> List[ChatSummary]:
        return list(self.chats.value)
