# =============================================================================
# File: chatsync/chat/ports/chat_store_port.py
# Description: Port interface for the authoritative backing store
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol, Optional, List, Dict, Any, Sequence, Tuple, runtime_checkable

from chatsync.chat.models import Chat, Membership, Message, Notification, User


@runtime_checkable
class ChatStorePort(Protocol):
    """
    Port: Chat Store

    Defined by: Chat Domain
    Implemented by: PgChatStore (chatsync/infra/store/pg_chat_store.py)

    Every mutating method is one unit of work. Committed row changes are
    published to the change feed by the implementation, never by callers.
    The store re-checks authorization with its own row policies and raises
    PermissionDeniedError when they reject a write.

    Categories:
    - Users (4 methods)
    - Chats (7 methods)
    - Personal chats (2 methods)
    - Memberships (6 methods)
    - Messages (6 methods)
    - Notifications (3 methods)
    """

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        ...

    async def get_users(self, user_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, User]:
        """Batch profile lookup. Unknown ids are absent from the result."""
        ...

    async def set_presence(
        self,
        user_id: uuid.UUID,
        is_online: bool,
        last_seen: Optional[datetime] = None,
    ) -> None:
        """Write the online flag; last_seen is only written when given."""
        ...

    async def update_profile(self, user_id: uuid.UUID, changes: Dict[str, Any]) -> User:
        ...

    # =========================================================================
    # Chats
    # =========================================================================

    async def get_chat(self, chat_id: uuid.UUID) -> Optional[Chat]:
        ...

    async def list_member_chats(self, user_id: uuid.UUID) -> List[Chat]:
        """All chats where the user holds a membership."""
        ...

    async def find_chat_by_invite(self, invite_link: str) -> Optional[Chat]:
        ...

    async def create_chat(self, chat: Chat, memberships: Sequence[Membership]) -> Chat:
        """Insert a chat and its initial memberships atomically."""
        ...

    async def update_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID, changes: Dict[str, Any]) -> Chat:
        """
        Apply column changes and bump updated_at.

        Raises:
            ChatNotFoundError: chat does not exist
        """
        ...

    async def delete_chat(self, actor_id: uuid.UUID, chat_id: uuid.UUID) -> None:
        """Remove the chat with its memberships and messages."""
        ...

    async def last_messages(self, chat_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Message]:
        """Newest message per chat. Chats without messages are absent."""
        ...

    # =========================================================================
    # Personal chats
    # =========================================================================

    async def find_or_create_personal_chat(
        self,
        requester_id: uuid.UUID,
        other_id: uuid.UUID,
    ) -> Tuple[uuid.UUID, bool]:
        """
        Return (chat_id, created) for the canonical unordered pair.

        Raises:
            ConflictDuplicateError: a concurrent creation for the same pair won
            UserNotFoundError: other_id has no profile
        """
        ...

    async def find_personal_chat(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Optional[uuid.UUID]:
        ...

    # =========================================================================
    # Memberships
    # =========================================================================

    async def get_membership(self, chat_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Membership]:
        ...

    async def list_memberships(self, chat_id: uuid.UUID) -> List[Membership]:
        """Memberships ordered by joined_at."""
        ...

    async def add_members(self, actor_id: uuid.UUID, memberships: Sequence[Membership]) -> List[Membership]:
        """
        Insert memberships, skipping users that already belong to the chat.

        Returns only the memberships actually created.
        """
        ...

    async def remove_member(self, actor_id: uuid.UUID, chat_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """
        Delete a membership.

        If no admin remains, the earliest remaining member is promoted.
        If nobody remains, the chat itself is removed.
        """
        ...

    async def join_chat(
        self,
        user_id: uuid.UUID,
        chat_id: uuid.UUID,
        invite_link: Optional[str] = None,
    ) -> Membership:
        """
        Self-join a public channel, or any group/channel whose current invite
        token equals invite_link. Idempotent for existing members.

        Raises:
            PermissionDeniedError: chat is neither public nor matched by the token
        """
        ...

    async def update_membership(
        self,
        actor_id: uuid.UUID,
        chat_id: uuid.UUID,
        user_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Membership:
        ...

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_message(self, message_id: uuid.UUID) -> Optional[Message]:
        ...

    async def list_messages(self, chat_id: uuid.UUID) -> List[Message]:
        """Full history ordered by (created_at, id) ascending."""
        ...

    async def insert_message(self, message: Message) -> Message:
        """
        Insert a message, bump the chat's updated_at and fan out notifications.

        created_at is assigned by the store.
        """
        ...

    async def update_message(self, actor_id: uuid.UUID, message_id: uuid.UUID, changes: Dict[str, Any]) -> Message:
        ...

    async def delete_message(self, actor_id: uuid.UUID, message_id: uuid.UUID) -> None:
        ...

    # =========================================================================
    # Notifications
    # =========================================================================

    async def list_notifications(self, user_id: uuid.UUID, limit: int) -> List[Notification]:
        """Newest first."""
        ...

    async def count_unread(self, user_id: uuid.UUID) -> int:
        ...

    async def mark_notifications_read(
        self,
        user_id: uuid.UUID,
        notification_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> int:
        """
        Flip is_read on the user's notifications (all unread when ids is None).

        Returns:
            Number of rows that actually changed from unread to read
        """
        ...
