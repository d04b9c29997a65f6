# =============================================================================
# File: chatsync/infra/store/pg_chat_store.py
# Description: PostgreSQL implementation of ChatStorePort
# =============================================================================

"""
PgChatStore

Every method is one transaction on the asyncpg pool (pg_client.transaction).
The acting user is set with set_config('chatsync.user_id', ..., true) so the
row policies in chatsync/database/chatsync.sql apply; system work inside the
same transaction (notification fan-out, admin promotion, empty-chat removal)
clears it. Committed changes are handed to ChangeFeedPublisher after the
transaction block exits, never before.

Errors:
    unique_violation         -> ConflictDuplicateError (pg_client.translate_pg_errors)
    insufficient_privilege   -> PermissionDeniedError
    row filtered by a policy -> ActionDeniedError / *NotFoundError
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from chatsync.chat.enums import ChatKind, MemberRole
from chatsync.chat.exceptions import (
    ActionDeniedError,
    ChatNotFoundError,
    MemberNotFoundError,
    MessageNotFoundError,
    UserNotFoundError,
)
from chatsync.chat.models import Chat, Membership, Message, Notification, User
from chatsync.chat.ports.object_storage_port import AuthPort
from chatsync.common.exceptions.exceptions import ValidationFailedError
from chatsync.infra.persistence import pg_client
from chatsync.realtime.publisher import ChangeFeedPublisher
from chatsync.realtime.types import ChangeOperation
from chatsync.sync.notifications import plan_join_notifications, plan_message_notifications

log = logging.getLogger("chatsync.infra.store")

PROFILE_COLUMNS = (
    "id, first_name, last_name, username, avatar_url, is_online, last_seen, "
    "privacy_settings, notification_settings"
)
CHAT_COLUMNS = (
    "id, name, description, avatar_url, chat_type, is_pinned, is_archived, is_muted, "
    "wallpaper_url, invite_link, settings, created_by, created_at, updated_at"
)
MEMBER_COLUMNS = (
    "chat_id, user_id, role, can_add_members, can_pin_messages, can_delete_messages, "
    "can_send_messages, joined_at"
)
MESSAGE_COLUMNS = (
    "id, chat_id, sender_id, content, message_type, file_url, file_name, reply_to_id, "
    "is_edited, created_at, updated_at"
)
NOTIFICATION_COLUMNS = "id, user_id, type, title, body, data, is_read, created_at"

PROFILE_UPDATABLE = frozenset({
    "first_name", "last_name", "username", "avatar_url", "privacy_settings", "notification_settings",
})
CHAT_UPDATABLE = frozenset({
    "name", "description", "avatar_url", "wallpaper_url", "invite_link", "settings",
    "is_pinned", "is_archived", "is_muted",
})
MEMBER_UPDATABLE = frozenset({
    "role", "can_add_members", "can_pin_messages", "can_delete_messages", "can_send_messages",
})
MESSAGE_UPDATABLE = frozenset({"content", "is_edited"})


# =============================================================================
# Row mapping
# =============================================================================

def _user(row: asyncpg.Record) -> User:
    return User.model_validate(dict(row))


def _chat(row: asyncpg.Record) -> Chat:
    return Chat.model_validate(dict(row))


def _membership(row: asyncpg.Record) -> Membership:
    return Membership.model_validate(dict(row))


def _message(row: asyncpg.Record) -> Message:
    return Message.model_validate(dict(row))


def _notification(row: asyncpg.Record) -> Notification:
    return Notification.model_validate(dict(row))


def build_set_clause(
    changes: Dict[str, Any],
    allowed: Iterable[str],
    start: int = 1,
) -> Tuple[str, List[Any]]:
    """
    "col = $n, ..." for an UPDATE plus its parameters.

    Raises:
        ValidationFailedError: a column outside `allowed`
    """
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValidationFailedError(f"Cannot update column(s): {', '.join(sorted(unknown))}")

    parts: List[str] = []
    params: List[Any] = []
    for index, (column, value) in enumerate(changes.items(), start):
        parts.append(f"{column} = ${index}")
        params.append(value.value if isinstance(value, Enum) else value)
    return ", ".join(parts), params


class PgChatStore:
    """
    ChatStorePort over PostgreSQL with row-level security.

    Reads run as the user reported by `auth` (system context when no auth
    collaborator is given, e.g. server-side jobs).
    """

    def __init__(self, publisher: ChangeFeedPublisher, auth: Optional[AuthPort] = None):
        self._publisher = publisher
        self._auth = auth

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _viewer(self) -> Optional[uuid.UUID]:
        return self._auth.current_user_id() if self._auth is not None else None

    @staticmethod
    async def _act_as(conn: asyncpg.Connection, actor_id: Optional[uuid.UUID]) -> None:
        await conn.execute("SELECT set_config('chatsync.user_id', $1, true)", str(actor_id) if actor_id else "")

    @asynccontextmanager
    async def _unit_of_work(
        self,
        operation: str,
        actor_id: Optional[uuid.UUID],
    ) -> AsyncIterator[asyncpg.Connection]:
        async with pg_client.translate_pg_errors(operation):
            async with pg_client.transaction() as conn:
                await self._act_as(conn, actor_id)
                yield conn

    async def _read(self, operation: str, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self._unit_of_work(operation, self._viewer()) as conn:
            return await conn.fetch(query, *args)

    async def _read_one(self, operation: str, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self._unit_of_work(operation, self._viewer()) as conn:
            return await conn.fetchrow(query, *args)

    @staticmethod
    async def _member_ids(conn: asyncpg.Connection, chat_id: uuid.UUID) -> List[uuid.UUID]:
        rows = await conn.fetch("SELECT user_id FROM chat_members WHERE chat_id = $1", chat_id)
        return [r["user_id"] for r in rows]

    async def _insert_notifications(
        self,
        conn: asyncpg.Connection,
        notifications: Sequence[Notification],
    ) -> List[Notification]:
        """Fan-out rows are written in the system context; call last in a unit of work."""
        if not notifications:
            return []
        await self._act_as(conn, None)
        inserted = []
        for n in notifications:
            row = await conn.fetchrow(
                f"""
                INSERT INTO notifications (id, user_id, type, title, body, data, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING {NOTIFICATION_COLUMNS}
                """,
                n.id, n.user_id, n.type, n.title, n.body, n.data, n.is_read, n.created_at,
            )
            inserted.append(_notification(row))
        return inserted

    async def _publish_notifications(self, notifications: Iterable[Notification]) -> None:
        for n in notifications:
            await self._publisher.publish_notification_change(ChangeOperation.INSERT, after=n)

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        row = await self._read_one("get_user", f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = $1", user_id)
        return _user(row) if row else None

    async def get_users(self, user_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, User]:
        if not user_ids:
            return {}
        rows = await self._read(
            "get_users",
            f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ANY($1::uuid[])",
            list(user_ids),
        )
        return {r["id"]: _user(r) for r in rows}

    async def set_presence(
        self,
        user_id: uuid.UUID,
        is_online: bool,
        last_seen: Optional[datetime] = None,
    ) -> None:
        async with self._unit_of_work("set_presence", user_id) as conn:
            if last_seen is None:
                status = await conn.execute(
                    "UPDATE profiles SET is_online = $2, updated_at = now() WHERE id = $1",
                    user_id, is_online,
                )
            else:
                status = await conn.execute(
                    "UPDATE profiles SET is_online = $2, last_seen = $3, updated_at = now() WHERE id = $1",
                    user_id, is_online, last_seen,
                )
        if status.endswith(" 0"):
            raise UserNotFoundError(str(user_id))

    async def update_profile(self, user_id: uuid.UUID, changes: Dict[str, Any]) -> User:
        clause, params = build_set_clause(changes, PROFILE_UPDATABLE, start=2)
        async with self._unit_of_work("update_profile", user_id) as conn:
            row = await conn.fetchrow(
                f"UPDATE profiles SET {clause}, updated_at = now() WHERE id = $1 RETURNING {PROFILE_COLUMNS}",
                user_id, *params,
            )
        if row is None:
            raise UserNotFoundError(str(user_id))
        return _user(row)

    # =========================================================================
    # Chats
    # =========================================================================

    async def get_chat(self, chat_id: uuid.UUID) -> Optional[Chat]:
        row = await self._read_one("get_chat", f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
        return _chat(row) if row else None

    async def list_member_chats(self, user_id: uuid.UUID) -> List[Chat]:
        rows = await self._read(
            "list_member_chats",
            f"""
            SELECT c.*
            FROM chats c
            JOIN chat_members m ON m.chat_id = c.id
            WHERE m.user_id = $1
            ORDER BY c.updated_at DESC, c.id
            """,
            user_id,
        )
        return [_chat(r) for r in rows]

    async def find_chat_by_invite(self, invite_link: str) -> Optional[Chat]:
        async with self._unit_of_work("find_chat_by_invite", None) as conn:
            # The token itself grants visibility; non-members cannot see the row otherwise
            row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE invite_link = $1", invite_link)
        return _chat(row) if row else None

    async def create_chat(self, chat: Chat, memberships: Sequence[Membership]) -> Chat:
        # Creator's own membership first: it seeds the admin the others are checked against
        ordered = sorted(memberships, key=lambda m: m.user_id != chat.created_by)

        async with self._unit_of_work("create_chat", chat.created_by) as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO chats (id, name, description, avatar_url, chat_type, wallpaper_url,
                                   settings, created_by, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $9)
                RETURNING {CHAT_COLUMNS}
                """,
                chat.id, chat.name, chat.description, chat.avatar_url, chat.chat_type.value,
                chat.wallpaper_url, chat.settings, chat.created_by, chat.created_at,
            )
            created = _chat(row)
            added = [await self._insert_membership(conn, m) for m in ordered]

            actor = await conn.fetchrow(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = $1", chat.created_by)
            planned = plan_join_notifications(
                created,
                [m for m in added if m.user_id != chat.created_by],
                _user(actor) if actor else None,
            )
            notifications = await self._insert_notifications(conn, planned)

        await self._publisher.publish_chat_change(
            ChangeOperation.INSERT, [m.user_id for m in added], after=created
        )
        await self._publish_notifications(notifications)
        return created

    async def update_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID, changes: Dict[str, Any]) -> Chat:
        clause, params = build_set_clause(changes, CHAT_UPDATABLE, start=2)
        async with self._unit_of_work("update_chat", actor_id) as conn:
            before_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1 FOR UPDATE", chat_id)
            if before_row is None:
                raise ChatNotFoundError(str(chat_id))
            row = await conn.fetchrow(
                f"""
                UPDATE chats SET {clause}, updated_at = clock_timestamp()
                WHERE id = $1
                RETURNING {CHAT_COLUMNS}
                """,
                chat_id, *params,
            )
            if row is None:
                raise ActionDeniedError(str(actor_id), "update_chat", "rejected by row policy")
            member_ids = await self._member_ids(conn, chat_id)

        before, after = _chat(before_row), _chat(row)
        await self._publisher.publish_chat_change(ChangeOperation.UPDATE, member_ids, before=before, after=after)
        return after

    async def delete_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID) -> None:
        async with self._unit_of_work("delete_chat", actor_id) as conn:
            before_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
            if before_row is None:
                raise ChatNotFoundError(str(chat_id))
            member_ids = await self._member_ids(conn, chat_id)
            deleted = await conn.fetchval("DELETE FROM chats WHERE id = $1 RETURNING id", chat_id)
            if deleted is None:
                raise ActionDeniedError(str(actor_id), "delete_chat", "only the creator may delete a chat")

        log.info(f"Chat {chat_id} deleted by {actor_id} ({len(member_ids)} members)")
        await self._publisher.publish_chat_change(ChangeOperation.DELETE, member_ids, before=_chat(before_row))

    async def last_messages(self, chat_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Message]:
        if not chat_ids:
            return {}
        rows = await self._read(
            "last_messages",
            f"""
            SELECT DISTINCT ON (chat_id) {MESSAGE_COLUMNS}
            FROM messages
            WHERE chat_id = ANY($1::uuid[])
            ORDER BY chat_id, created_at DESC, id DESC
            """,
            list(chat_ids),
        )
        return {r["chat_id"]: _message(r) for r in rows}

    # =========================================================================
    # Personal chats
    # =========================================================================

    async def find_or_create_personal_chat(
        self,
        requester_id: uuid.UUID,
        other_id: uuid.UUID,
    ) -> Tuple[uuid.UUID, bool]:
        async with self._unit_of_work("find_or_create_personal_chat", requester_id) as conn:
            if await conn.fetchval("SELECT 1 FROM profiles WHERE id = $1", other_id) is None:
                raise UserNotFoundError(str(other_id))
            row = await conn.fetchrow(
                "SELECT personal_chat_id, created FROM chatsync_find_or_create_personal_chat($1, $2)",
                requester_id, other_id,
            )
            chat_id, created = row["personal_chat_id"], row["created"]
            chat_row = None
            if created:
                chat_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)

        if chat_row is not None:
            await self._publisher.publish_chat_change(
                ChangeOperation.INSERT, [requester_id, other_id], after=_chat(chat_row)
            )
        return chat_id, created

    async def find_personal_chat(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Optional[uuid.UUID]:
        row = await self._read_one(
            "find_personal_chat",
            """
            SELECT chat_id FROM personal_chat_pairs
            WHERE user_low = LEAST($1::uuid, $2::uuid) AND user_high = GREATEST($1::uuid, $2::uuid)
            """,
            user_a, user_b,
        )
        return row["chat_id"] if row else None

    # =========================================================================
    # Memberships
    # =========================================================================

    @staticmethod
    async def _insert_membership(conn: asyncpg.Connection, m: Membership) -> Membership:
        row = await conn.fetchrow(
            f"""
            INSERT INTO chat_members (chat_id, user_id, role, can_add_members, can_pin_messages,
                                      can_delete_messages, can_send_messages, joined_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, clock_timestamp())
            RETURNING {MEMBER_COLUMNS}
            """,
            m.chat_id, m.user_id, m.role.value, m.can_add_members, m.can_pin_messages,
            m.can_delete_messages, m.can_send_messages,
        )
        return _membership(row)

    async def get_membership(self, chat_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Membership]:
        row = await self._read_one(
            "get_membership",
            f"SELECT {MEMBER_COLUMNS} FROM chat_members WHERE chat_id = $1 AND user_id = $2",
            chat_id, user_id,
        )
        return _membership(row) if row else None

    async def list_memberships(self, chat_id: uuid.UUID) -> List[Membership]:
        rows = await self._read(
            "list_memberships",
            f"SELECT {MEMBER_COLUMNS} FROM chat_members WHERE chat_id = $1 ORDER BY joined_at, user_id",
            chat_id,
        )
        return [_membership(r) for r in rows]

    async def add_members(self, actor_id: uuid.UUID, memberships: Sequence[Membership]) -> List[Membership]:
        if not memberships:
            return []
        chat_id = memberships[0].chat_id

        async with self._unit_of_work("add_members", actor_id) as conn:
            chat_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
            if chat_row is None:
                raise ChatNotFoundError(str(chat_id))
            chat = _chat(chat_row)

            added: List[Membership] = []
            for m in memberships:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO chat_members (chat_id, user_id, role, can_add_members, can_pin_messages,
                                              can_delete_messages, can_send_messages, joined_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, clock_timestamp())
                    ON CONFLICT (chat_id, user_id) DO NOTHING
                    RETURNING {MEMBER_COLUMNS}
                    """,
                    m.chat_id, m.user_id, m.role.value, m.can_add_members, m.can_pin_messages,
                    m.can_delete_messages, m.can_send_messages,
                )
                if row is not None:
                    added.append(_membership(row))

            actor = await conn.fetchrow(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = $1", actor_id)
            notifications = await self._insert_notifications(
                conn, plan_join_notifications(chat, added, _user(actor) if actor else None)
            )

        for m in added:
            await self._publisher.publish_membership_change(ChangeOperation.INSERT, m, chat)
        await self._publish_notifications(notifications)
        return added

    async def remove_member(self, actor_id: uuid.UUID, chat_id: uuid.UUID, user_id: uuid.UUID) -> None:
        promoted: Optional[Membership] = None
        chat_removed = False

        async with self._unit_of_work("remove_member", actor_id) as conn:
            chat_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
            if chat_row is None:
                raise ChatNotFoundError(str(chat_id))
            row = await conn.fetchrow(
                f"DELETE FROM chat_members WHERE chat_id = $1 AND user_id = $2 RETURNING {MEMBER_COLUMNS}",
                chat_id, user_id,
            )
            if row is None:
                visible = await conn.fetchval(
                    "SELECT 1 FROM chat_members WHERE chat_id = $1 AND user_id = $2", chat_id, user_id
                )
                if visible:
                    raise ActionDeniedError(str(actor_id), "remove_member", "rejected by row policy")
                raise MemberNotFoundError(str(chat_id), str(user_id))
            removed = _membership(row)

            await self._act_as(conn, None)
            remaining = await conn.fetch(
                f"SELECT {MEMBER_COLUMNS} FROM chat_members WHERE chat_id = $1 ORDER BY joined_at, user_id",
                chat_id,
            )
            if not remaining:
                await conn.execute("DELETE FROM chats WHERE id = $1", chat_id)
                chat_removed = True
            elif not any(r["role"] == MemberRole.ADMIN.value for r in remaining):
                earliest = remaining[0]
                promoted_row = await conn.fetchrow(
                    f"""
                    UPDATE chat_members
                    SET role = 'admin', can_add_members = true, can_pin_messages = true,
                        can_delete_messages = true, can_send_messages = true
                    WHERE chat_id = $1 AND user_id = $2
                    RETURNING {MEMBER_COLUMNS}
                    """,
                    chat_id, earliest["user_id"],
                )
                promoted = _membership(promoted_row)

        chat = _chat(chat_row)
        await self._publisher.publish_membership_change(ChangeOperation.DELETE, removed, chat)
        if promoted is not None:
            log.info(f"User {promoted.user_id} promoted to admin of chat {chat_id} (last admin left)")
        if chat_removed:
            log.info(f"Chat {chat_id} removed: no members left")

    async def join_chat(
        self,
        user_id: uuid.UUID,
        chat_id: uuid.UUID,
        invite_link: Optional[str] = None,
    ) -> Membership:
        async with self._unit_of_work("join_chat", None) as conn:
            chat_row = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
            if chat_row is None:
                raise ChatNotFoundError(str(chat_id))
            chat = _chat(chat_row)

            existing = await conn.fetchrow(
                f"SELECT {MEMBER_COLUMNS} FROM chat_members WHERE chat_id = $1 AND user_id = $2",
                chat_id, user_id,
            )
            if existing is not None:
                return _membership(existing)

            token_matches = invite_link is not None and chat.invite_link == invite_link
            if chat.is_personal or not (chat.is_public_channel or token_matches):
                raise ActionDeniedError(str(user_id), "join_chat", "chat is not public and the invite does not match")

            await self._act_as(conn, user_id)
            await conn.execute("SELECT set_config('chatsync.invite_link', $1, true)", invite_link or "")
            membership = await self._insert_membership(conn, Membership(
                chat_id=chat_id,
                user_id=user_id,
                role=MemberRole.MEMBER,
                can_send_messages=chat.chat_type != ChatKind.CHANNEL,
            ))

            actor = await conn.fetchrow(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = $1", user_id)
            notifications = await self._insert_notifications(
                conn, plan_join_notifications(chat, [membership], _user(actor) if actor else None)
            )

        await self._publisher.publish_membership_change(ChangeOperation.INSERT, membership, chat)
        await self._publish_notifications(notifications)
        return membership

    async def update_membership(
        self,
        actor_id: uuid.UUID,
        chat_id: uuid.UUID,
        user_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Membership:
        clause, params = build_set_clause(changes, MEMBER_UPDATABLE, start=3)
        async with self._unit_of_work("update_membership", actor_id) as conn:
            row = await conn.fetchrow(
                f"UPDATE chat_members SET {clause} WHERE chat_id = $1 AND user_id = $2 RETURNING {MEMBER_COLUMNS}",
                chat_id, user_id, *params,
            )
        if row is None:
            raise MemberNotFoundError(str(chat_id), str(user_id))
        return _membership(row)

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_message(self, message_id: uuid.UUID) -> Optional[Message]:
        row = await self._read_one("get_message", f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id)
        return _message(row) if row else None

    async def list_messages(self, chat_id: uuid.UUID) -> List[Message]:
        rows = await self._read(
            "list_messages",
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chat_id = $1 ORDER BY created_at, id",
            chat_id,
        )
        return [_message(r) for r in rows]

    async def insert_message(self, message: Message) -> Message:
        async with self._unit_of_work("insert_message", message.sender_id) as conn:
            chat_before = await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", message.chat_id)
            if chat_before is None:
                raise ChatNotFoundError(str(message.chat_id))
            row = await conn.fetchrow(
                f"""
                INSERT INTO messages (id, chat_id, sender_id, content, message_type, file_url,
                                      file_name, reply_to_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, clock_timestamp())
                RETURNING {MESSAGE_COLUMNS}
                """,
                message.id, message.chat_id, message.sender_id, message.content,
                message.message_type.value, message.file_url, message.file_name, message.reply_to_id,
            )
            stored = _message(row)

            await self._act_as(conn, None)
            chat_after = _chat(await conn.fetchrow(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = $1", message.chat_id))
            member_rows = await conn.fetch(f"SELECT {MEMBER_COLUMNS} FROM chat_members WHERE chat_id = $1", message.chat_id)
            memberships = [_membership(r) for r in member_rows]
            user_rows = await conn.fetch(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ANY($1::uuid[])",
                [m.user_id for m in memberships] + [stored.sender_id],
            )
            users = {r["id"]: _user(r) for r in user_rows}
            notifications = await self._insert_notifications(
                conn, plan_message_notifications(chat_after, stored, memberships, users)
            )

        await self._publisher.publish_message_change(ChangeOperation.INSERT, after=stored)
        await self._publisher.publish_chat_change(
            ChangeOperation.UPDATE, [m.user_id for m in memberships], before=_chat(chat_before), after=chat_after
        )
        await self._publish_notifications(notifications)
        return stored

    async def update_message(self, actor_id: uuid.UUID, message_id: uuid.UUID, changes: Dict[str, Any]) -> Message:
        clause, params = build_set_clause(changes, MESSAGE_UPDATABLE, start=2)
        async with self._unit_of_work("update_message", actor_id) as conn:
            before_row = await conn.fetchrow(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id)
            if before_row is None:
                raise MessageNotFoundError(str(message_id))
            row = await conn.fetchrow(
                f"""
                UPDATE messages SET {clause}, updated_at = clock_timestamp()
                WHERE id = $1
                RETURNING {MESSAGE_COLUMNS}
                """,
                message_id, *params,
            )
            if row is None:
                raise ActionDeniedError(str(actor_id), "edit_message", "only the sender may edit a message")

        after = _message(row)
        await self._publisher.publish_message_change(ChangeOperation.UPDATE, before=_message(before_row), after=after)
        return after

    async def delete_message(self, actor_id: uuid.UUID, message_id: uuid.UUID) -> None:
        async with self._unit_of_work("delete_message", actor_id) as conn:
            before_row = await conn.fetchrow(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id)
            if before_row is None:
                raise MessageNotFoundError(str(message_id))
            deleted = await conn.fetchval("DELETE FROM messages WHERE id = $1 RETURNING id", message_id)
            if deleted is None:
                raise ActionDeniedError(str(actor_id), "delete_message", "rejected by row policy")

        await self._publisher.publish_message_change(ChangeOperation.DELETE, before=_message(before_row))

    # =========================================================================
    # Notifications
    # =========================================================================

    async def list_notifications(self, user_id: uuid.UUID, limit: int) -> List[Notification]:
        async with self._unit_of_work("list_notifications", user_id) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {NOTIFICATION_COLUMNS} FROM notifications
                WHERE user_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                user_id, limit,
            )
        return [_notification(r) for r in rows]

    async def count_unread(self, user_id: uuid.UUID) -> int:
        async with self._unit_of_work("count_unread", user_id) as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM notifications WHERE user_id = $1 AND NOT is_read", user_id
            )

    async def mark_notifications_read(
        self,
        user_id: uuid.UUID,
        notification_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> int:
        async with self._unit_of_work("mark_notifications_read", user_id) as conn:
            if notification_ids is None:
                rows = await conn.fetch(
                    f"""
                    UPDATE notifications SET is_read = true
                    WHERE user_id = $1 AND NOT is_read
                    RETURNING {NOTIFICATION_COLUMNS}
                    """,
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    f"""
                    UPDATE notifications SET is_read = true
                    WHERE user_id = $1 AND NOT is_read AND id = ANY($2::uuid[])
                    RETURNING {NOTIFICATION_COLUMNS}
                    """,
                    user_id, list(notification_ids),
                )

        for row in rows:
            after = _notification(row)
            before = after.model_copy(update={"is_read": False})
            await self._publisher.publish_notification_change(ChangeOperation.UPDATE, before=before, after=after)
        return len(rows)
