# =============================================================================
# File: tests/fakes/fake_chat_store.py
# Description: Fake implementation of ChatStorePort for unit testing
# Pattern: Ports & Adapters - Fake/Stub adapter
# =============================================================================

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatsync.chat.dedup import canonical_pair, personal_chat_name
from chatsync.chat.enums import Capability, ChatKind, MemberRole
from chatsync.chat.exceptions import (
    ActionDeniedError,
    ChatNotFoundError,
    MemberNotFoundError,
    MessageNotFoundError,
    UserNotFoundError,
)
from chatsync.chat.models import Chat, Membership, Message, Notification, User
from chatsync.common.exceptions.exceptions import ConflictDuplicateError
from chatsync.realtime.publisher import ChangeFeedPublisher
from chatsync.realtime.types import ChangeOperation
from chatsync.sync.notifications import plan_join_notifications, plan_message_notifications
from chatsync.utils.uuid_utils import generate_uuid

EPOCH = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

ADMIN_COLUMNS = frozenset({"name", "description", "avatar_url", "wallpaper_url"})


@dataclass
class CallRecord:
    """Record of a method call for verification."""
    method: str
    args: tuple
    kwargs: Dict[str, Any]


class FakeChatStore:
    """
    In-memory ChatStorePort.

    Mirrors the row policies of the SQL schema closely enough for unit tests:
    writes are re-checked against memberships and rejected with
    ActionDeniedError, committed changes go through a real
    ChangeFeedPublisher, and the personal-chat pair key behaves like a
    unique constraint under concurrent creators.

    Usage:
        transport = FakeChangeFeedTransport()
        store = FakeChatStore(ChangeFeedPublisher(transport))
        alice = store.add_user("alice", first_name="Alice")
        team = store.seed_chat(alice.id, [bob.id], name="Team")

        store.configure_failure("insert_message", InfrastructureError("db down"))
        assert store.get_call_count("delete_message") == 0
    """

    def __init__(self, publisher: Optional[ChangeFeedPublisher] = None):
        self.publisher = publisher
        self.users: Dict[uuid.UUID, User] = {}
        self.chats: Dict[uuid.UUID, Chat] = {}
        self.members: Dict[Tuple[uuid.UUID, uuid.UUID], Membership] = {}
        self.messages: Dict[uuid.UUID, Message] = {}
        self.notifications: Dict[uuid.UUID, Notification] = {}
        self.pairs: Dict[Tuple[uuid.UUID, uuid.UUID], uuid.UUID] = {}

        self._tick = 0
        self._calls: List[CallRecord] = []
        self._should_fail: Dict[str, Exception] = {}

    # =========================================================================
    # Test Setup Methods
    # =========================================================================

    def now(self) -> datetime:
        """Strictly increasing store clock (1 ms per call)."""
        self._tick += 1
        return EPOCH + timedelta(milliseconds=self._tick)

    def add_user(self, username: Optional[str] = None, **fields: Any) -> User:
        user = User(id=fields.pop("id", None) or generate_uuid(), username=username, **fields)
        self.users[user.id] = user
        return user

    def seed_chat(
        self,
        creator_id: uuid.UUID,
        member_ids: Sequence[uuid.UUID] = (),
        chat_type: ChatKind = ChatKind.GROUP,
        name: Optional[str] = "Team",
        **fields: Any,
    ) -> Chat:
        """Insert a chat with memberships directly (nothing is published)."""
        now = self.now()
        chat = Chat(
            id=generate_uuid(), name=name, chat_type=chat_type, created_by=creator_id,
            created_at=now, updated_at=now, **fields,
        )
        self.chats[chat.id] = chat
        self._put_member(Membership(
            chat_id=chat.id, user_id=creator_id, role=MemberRole.ADMIN,
            can_add_members=True, can_pin_messages=True, can_delete_messages=True,
            joined_at=self.now(),
        ))
        for user_id in member_ids:
            self._put_member(Membership(
                chat_id=chat.id, user_id=user_id,
                can_send_messages=chat_type != ChatKind.CHANNEL, joined_at=self.now(),
            ))
        if chat_type == ChatKind.PERSONAL and member_ids:
            self.pairs[canonical_pair(creator_id, member_ids[0])] = chat.id
        return chat

    def seed_message(self, chat_id: uuid.UUID, sender_id: uuid.UUID, content: str) -> Message:
        message = Message(id=generate_uuid(), chat_id=chat_id, sender_id=sender_id, content=content, created_at=self.now())
        self.messages[message.id] = message
        return message

    def seed_notification(self, user_id: uuid.UUID, title: str = "Hello", is_read: bool = False) -> Notification:
        notification = Notification(
            id=generate_uuid(), user_id=user_id, type="message", title=title, is_read=is_read, created_at=self.now()
        )
        self.notifications[notification.id] = notification
        return notification

    def configure_failure(self, method: str, error: Exception) -> None:
        """Configure a method to raise `error`."""
        self._should_fail[method] = error

    def clear_failures(self) -> None:
        self._should_fail.clear()

    # =========================================================================
    # Test Verification Methods
    # =========================================================================

    def was_called(self, method: str) -> bool:
        return any(c.method == method for c in self._calls)

    def get_call_count(self, method: str) -> int:
        return sum(1 for c in self._calls if c.method == method)

    def get_calls(self, method: str) -> List[CallRecord]:
        return [c for c in self._calls if c.method == method]

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _record_call(self, method: str, *args, **kwargs) -> None:
        self._calls.append(CallRecord(method=method, args=args, kwargs=kwargs))

    def _check_failure(self, method: str) -> None:
        if method in self._should_fail:
            raise self._should_fail[method]

    def _put_member(self, membership: Membership) -> None:
        self.members[(membership.chat_id, membership.user_id)] = membership

    def _memberships(self, chat_id: uuid.UUID) -> List[Membership]:
        return sorted(
            (m for (c, _), m in self.members.items() if c == chat_id),
            key=lambda m: (m.joined_at, str(m.user_id)),
        )

    def _member_ids(self, chat_id: uuid.UUID) -> List[uuid.UUID]:
        return [m.user_id for m in self._memberships(chat_id)]

    def _require_chat(self, chat_id: uuid.UUID) -> Chat:
        chat = self.chats.get(chat_id)
        if chat is None:
            raise ChatNotFoundError(str(chat_id))
        return chat

    def _require(self, allowed: bool, actor_id: uuid.UUID, action: str, reason: str) -> None:
        if not allowed:
            raise ActionDeniedError(str(actor_id), action, reason)

    def _is_admin(self, chat_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        m = self.members.get((chat_id, user_id))
        return m is not None and m.is_admin

    def _has(self, chat_id: uuid.UUID, user_id: uuid.UUID, capability: Capability) -> bool:
        m = self.members.get((chat_id, user_id))
        return m is not None and (m.is_admin or m.has_capability(capability))

    def _add_notifications(self, planned: Sequence[Notification]) -> List[Notification]:
        for n in planned:
            self.notifications[n.id] = n
        return list(planned)

    async def _publish_notifications(self, notifications: Sequence[Notification]) -> None:
        if self.publisher is None:
            return
        for n in notifications:
            await self.publisher.publish_notification_change(ChangeOperation.INSERT, after=n)

    async def _publish_chat(self, op: ChangeOperation, member_ids, before=None, after=None) -> None:
        if self.publisher is not None:
            await self.publisher.publish_chat_change(op, member_ids, before=before, after=after)

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        self._record_call("get_user", user_id)
        self._check_failure("get_user")
        return self.users.get(user_id)

    async def get_users(self, user_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, User]:
        self._record_call("get_users", list(user_ids))
        self._check_failure("get_users")
        return {u: self.users[u] for u in user_ids if u in self.users}

    async def set_presence(self, user_id: uuid.UUID, is_online: bool, last_seen: Optional[datetime] = None) -> None:
        self._record_call("set_presence", user_id, is_online, last_seen=last_seen)
        self._check_failure("set_presence")
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        changes: Dict[str, Any] = {"is_online": is_online}
        if last_seen is not None:
            changes["last_seen"] = last_seen
        self.users[user_id] = user.model_copy(update=changes)

    async def update_profile(self, user_id: uuid.UUID, changes: Dict[str, Any]) -> User:
        self._record_call("update_profile", user_id, changes)
        self._check_failure("update_profile")
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        username = changes.get("username")
        if username and any(u.username == username and u.id != user_id for u in self.users.values()):
            raise ConflictDuplicateError(f"username {username} is taken")
        updated = User.model_validate({**user.model_dump(), **changes})
        self.users[user_id] = updated
        return updated

    # =========================================================================
    # Chats
    # =========================================================================

    async def get_chat(self, chat_id: uuid.UUID) -> Optional[Chat]:
        self._record_call("get_chat", chat_id)
        self._check_failure("get_chat")
        return self.chats.get(chat_id)

    async def list_member_chats(self, user_id: uuid.UUID) -> List[Chat]:
        self._record_call("list_member_chats", user_id)
        self._check_failure("list_member_chats")
        return [self.chats[c] for (c, u) in self.members if u == user_id and c in self.chats]

    async def find_chat_by_invite(self, invite_link: str) -> Optional[Chat]:
        self._record_call("find_chat_by_invite", invite_link)
        self._check_failure("find_chat_by_invite")
        return next((c for c in self.chats.values() if c.invite_link == invite_link), None)

    async def create_chat(self, chat: Chat, memberships: Sequence[Membership]) -> Chat:
        self._record_call("create_chat", chat, list(memberships))
        self._check_failure("create_chat")
        now = self.now()
        created = chat.model_copy(update={"created_at": now, "updated_at": now})
        self.chats[created.id] = created
        added = []
        for m in sorted(memberships, key=lambda m: m.user_id != chat.created_by):
            stored = m.model_copy(update={"joined_at": self.now()})
            self._put_member(stored)
            added.append(stored)

        notifications = self._add_notifications(plan_join_notifications(
            created, [m for m in added if m.user_id != chat.created_by], self.users.get(chat.created_by), now,
        ))
        await self._publish_chat(ChangeOperation.INSERT, [m.user_id for m in added], after=created)
        await self._publish_notifications(notifications)
        return created

    async def update_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID, changes: Dict[str, Any]) -> Chat:
        self._record_call("update_chat", actor_id, chat_id, changes)
        self._check_failure("update_chat")
        before = self._require_chat(chat_id)
        self._require((chat_id, actor_id) in self.members, actor_id, "update_chat", "not a member")
        if not self._is_admin(chat_id, actor_id):
            self._require(not (ADMIN_COLUMNS & set(changes)), actor_id, "update_chat", "admin only")
            if "invite_link" in changes:
                self._require(self._has(chat_id, actor_id, Capability.ADD_MEMBERS), actor_id, "create_invite", "capability")
            if "settings" in changes:
                self._require(self._has(chat_id, actor_id, Capability.PIN_MESSAGES), actor_id, "pin_message", "capability")

        after = before.model_copy(update={**changes, "updated_at": self.now()})
        self.chats[chat_id] = after
        await self._publish_chat(ChangeOperation.UPDATE, self._member_ids(chat_id), before=before, after=after)
        return after

    async def delete_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID) -> None:
        self._record_call("delete_chat", actor_id, chat_id)
        self._check_failure("delete_chat")
        before = self._require_chat(chat_id)
        self._require(before.created_by == actor_id, actor_id, "delete_chat", "creator only")

        member_ids = self._member_ids(chat_id)
        self._drop_chat(chat_id)
        await self._publish_chat(ChangeOperation.DELETE, member_ids, before=before)

    def _drop_chat(self, chat_id: uuid.UUID) -> None:
        self.chats.pop(chat_id, None)
        for key in [k for k in self.members if k[0] == chat_id]:
            del self.members[key]
        for message_id in [m.id for m in self.messages.values() if m.chat_id == chat_id]:
            del self.messages[message_id]
        for pair in [p for p, c in self.pairs.items() if c == chat_id]:
            del self.pairs[pair]

    async def last_messages(self, chat_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Message]:
        self._record_call("last_messages", list(chat_ids))
        self._check_failure("last_messages")
        last: Dict[uuid.UUID, Message] = {}
        wanted = set(chat_ids)
        for m in self.messages.values():
            if m.chat_id not in wanted:
                continue
            held = last.get(m.chat_id)
            if held is None or (m.created_at, str(m.id)) > (held.created_at, str(held.id)):
                last[m.chat_id] = m
        return last

    # =========================================================================
    # Personal chats
    # =========================================================================

    async def find_or_create_personal_chat(self, requester_id: uuid.UUID, other_id: uuid.UUID) -> Tuple[uuid.UUID, bool]:
        self._record_call("find_or_create_personal_chat", requester_id, other_id)
        self._check_failure("find_or_create_personal_chat")
        other = self.users.get(other_id)
        if other is None:
            raise UserNotFoundError(str(other_id))

        key = canonical_pair(requester_id, other_id)
        existing = self.pairs.get(key)
        if existing is not None:
            return existing, False

        # Let concurrent creators interleave between the lookup and the insert
        await asyncio.sleep(0)
        if key in self.pairs:
            raise ConflictDuplicateError(f"duplicate key personal_chat_pairs {key}")

        now = self.now()
        chat = Chat(
            id=generate_uuid(), name=personal_chat_name(other), chat_type=ChatKind.PERSONAL,
            created_by=requester_id, created_at=now, updated_at=now,
        )
        self.chats[chat.id] = chat
        self.pairs[key] = chat.id
        self._put_member(Membership(
            chat_id=chat.id, user_id=requester_id, role=MemberRole.ADMIN, can_add_members=True,
            can_pin_messages=True, can_delete_messages=True, joined_at=self.now(),
        ))
        self._put_member(Membership(chat_id=chat.id, user_id=other_id, joined_at=self.now()))
        await self._publish_chat(ChangeOperation.INSERT, [requester_id, other_id], after=chat)
        return chat.id, True

    async def find_personal_chat(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Optional[uuid.UUID]:
        self._record_call("find_personal_chat", user_a, user_b)
        self._check_failure("find_personal_chat")
        return self.pairs.get(canonical_pair(user_a, user_b))

    # =========================================================================
    # Memberships
    # =========================================================================

    async def get_membership(self, chat_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Membership]:
        self._record_call("get_membership", chat_id, user_id)
        self._check_failure("get_membership")
        return self.members.get((chat_id, user_id))

    async def list_memberships(self, chat_id: uuid.UUID) -> List[Membership]:
        self._record_call("list_memberships", chat_id)
        self._check_failure("list_memberships")
        return self._memberships(chat_id)

    async def add_members(self, actor_id: uuid.UUID, memberships: Sequence[Membership]) -> List[Membership]:
        self._record_call("add_members", actor_id, list(memberships))
        self._check_failure("add_members")
        if not memberships:
            return []
        chat = self._require_chat(memberships[0].chat_id)
        self._require(self._has(chat.id, actor_id, Capability.ADD_MEMBERS), actor_id, "add_members", "capability")

        added = []
        for m in memberships:
            if (m.chat_id, m.user_id) in self.members:
                continue
            stored = m.model_copy(update={"joined_at": self.now()})
            self._put_member(stored)
            added.append(stored)

        notifications = self._add_notifications(plan_join_notifications(chat, added, self.users.get(actor_id)))
        if self.publisher is not None:
            for m in added:
                await self.publisher.publish_membership_change(ChangeOperation.INSERT, m, chat)
        await self._publish_notifications(notifications)
        return added

    async def remove_member(self, actor_id: uuid.UUID, chat_id: uuid.UUID, user_id: uuid.UUID) -> None:
        self._record_call("remove_member", actor_id, chat_id, user_id)
        self._check_failure("remove_member")
        chat = self._require_chat(chat_id)
        removed = self.members.get((chat_id, user_id))
        if removed is None:
            raise MemberNotFoundError(str(chat_id), str(user_id))
        self._require(actor_id == user_id or self._is_admin(chat_id, actor_id), actor_id, "remove_member", "admin only")

        del self.members[(chat_id, user_id)]
        remaining = self._memberships(chat_id)
        if not remaining:
            self._drop_chat(chat_id)
        elif not any(m.is_admin for m in remaining):
            earliest = remaining[0]
            self._put_member(earliest.model_copy(update={
                "role": MemberRole.ADMIN, "can_add_members": True, "can_pin_messages": True,
                "can_delete_messages": True, "can_send_messages": True,
            }))

        if self.publisher is not None:
            await self.publisher.publish_membership_change(ChangeOperation.DELETE, removed, chat)

    async def join_chat(self, user_id: uuid.UUID, chat_id: uuid.UUID, invite_link: Optional[str] = None) -> Membership:
        self._record_call("join_chat", user_id, chat_id, invite_link=invite_link)
        self._check_failure("join_chat")
        chat = self._require_chat(chat_id)
        existing = self.members.get((chat_id, user_id))
        if existing is not None:
            return existing
        token_matches = invite_link is not None and chat.invite_link == invite_link
        self._require(
            not chat.is_personal and (chat.is_public_channel or token_matches),
            user_id, "join_chat", "chat is not public and the invite does not match",
        )

        membership = Membership(
            chat_id=chat_id, user_id=user_id, can_send_messages=chat.chat_type != ChatKind.CHANNEL,
            joined_at=self.now(),
        )
        self._put_member(membership)
        notifications = self._add_notifications(plan_join_notifications(chat, [membership], self.users.get(user_id)))
        if self.publisher is not None:
            await self.publisher.publish_membership_change(ChangeOperation.INSERT, membership, chat)
        await self._publish_notifications(notifications)
        return membership

    async def update_membership(
        self,
        actor_id: uuid.UUID,
        chat_id: uuid.UUID,
        user_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Membership:
        self._record_call("update_membership", actor_id, chat_id, user_id, changes)
        self._check_failure("update_membership")
        held = self.members.get((chat_id, user_id))
        if held is None:
            raise MemberNotFoundError(str(chat_id), str(user_id))
        self._require(self._is_admin(chat_id, actor_id), actor_id, "manage_members", "admin only")
        updated = Membership.model_validate({**held.model_dump(), **changes})
        self._put_member(updated)
        return updated

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_message(self, message_id: uuid.UUID) -> Optional[Message]:
        self._record_call("get_message", message_id)
        self._check_failure("get_message")
        return self.messages.get(message_id)

    async def list_messages(self, chat_id: uuid.UUID) -> List[Message]:
        self._record_call("list_messages", chat_id)
        self._check_failure("list_messages")
        return sorted(
            (m for m in self.messages.values() if m.chat_id == chat_id),
            key=lambda m: (m.created_at, str(m.id)),
        )

    async def insert_message(self, message: Message) -> Message:
        self._record_call("insert_message", message)
        self._check_failure("insert_message")
        chat_before = self._require_chat(message.chat_id)
        self._require(
            self._has(message.chat_id, message.sender_id, Capability.SEND_MESSAGES),
            message.sender_id, "send_message", "capability",
        )

        stored = message.model_copy(update={"created_at": self.now()})
        self.messages[stored.id] = stored
        chat_after = chat_before.model_copy(update={"updated_at": max(chat_before.updated_at, stored.created_at)})
        self.chats[chat_after.id] = chat_after

        memberships = self._memberships(message.chat_id)
        notifications = self._add_notifications(
            plan_message_notifications(chat_after, stored, memberships, self.users)
        )
        if self.publisher is not None:
            await self.publisher.publish_message_change(ChangeOperation.INSERT, after=stored)
        await self._publish_chat(
            ChangeOperation.UPDATE, [m.user_id for m in memberships], before=chat_before, after=chat_after
        )
        await self._publish_notifications(notifications)
        return stored

    async def update_message(self, actor_id: uuid.UUID, message_id: uuid.UUID, changes: Dict[str, Any]) -> Message:
        self._record_call("update_message", actor_id, message_id, changes)
        self._check_failure("update_message")
        before = self.messages.get(message_id)
        if before is None:
            raise MessageNotFoundError(str(message_id))
        self._require(before.sender_id == actor_id, actor_id, "edit_message", "sender only")

        after = before.model_copy(update={**changes, "updated_at": self.now()})
        self.messages[message_id] = after
        if self.publisher is not None:
            await self.publisher.publish_message_change(ChangeOperation.UPDATE, before=before, after=after)
        return after

    async def delete_message(self, actor_id: uuid.UUID, message_id: uuid.UUID) -> None:
        self._record_call("delete_message", actor_id, message_id)
        self._check_failure("delete_message")
        before = self.messages.get(message_id)
        if before is None:
            raise MessageNotFoundError(str(message_id))
        self._require(
            before.sender_id == actor_id or self._has(before.chat_id, actor_id, Capability.DELETE_MESSAGES),
            actor_id, "delete_message", "capability",
        )

        del self.messages[message_id]
        if self.publisher is not None:
            await self.publisher.publish_message_change(ChangeOperation.DELETE, before=before)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def list_notifications(self, user_id: uuid.UUID, limit: int) -> List[Notification]:
        self._record_call("list_notifications", user_id, limit)
        self._check_failure("list_notifications")
        own = [n for n in self.notifications.values() if n.user_id == user_id]
        own.sort(key=lambda n: (n.created_at, str(n.id)), reverse=True)
        return own[:limit]

    async def count_unread(self, user_id: uuid.UUID) -> int:
        self._record_call("count_unread", user_id)
        self._check_failure("count_unread")
        return sum(1 for n in self.notifications.values() if n.user_id == user_id and not n.is_read)

    async def mark_notifications_read(
        self,
        user_id: uuid.UUID,
        notification_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> int:
        self._record_call("mark_notifications_read", user_id, notification_ids)
        self._check_failure("mark_notifications_read")
        wanted = None if notification_ids is None else set(notification_ids)
        changed = []
        for n in list(self.notifications.values()):
            if n.user_id != user_id or n.is_read or (wanted is not None and n.id not in wanted):
                continue
            after = n.model_copy(update={"is_read": True})
            self.notifications[n.id] = after
            changed.append((n, after))

        if self.publisher is not None:
            for before, after in changed:
                await self.publisher.publish_notification_change(ChangeOperation.UPDATE, before=before, after=after)
        return len(changed)


# =============================================================================
# EOF
# =============================================================================
