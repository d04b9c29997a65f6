# =============================================================================
# File: chatsync/chat/dedup.py
# Description: Personal-chat deduplication (find-or-create per user pair)
# =============================================================================

"""
Personal-Chat Deduplication Protocol

Exactly one personal chat exists per unordered user pair. The store performs
find-or-create as one unit of work guarded by a unique constraint on the
canonical pair (user_low, user_high). A concurrent creator that loses the race
gets ConflictDuplicateError from the store and falls back to a lookup, so
callers only ever see the winning chat id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional, Tuple

from chatsync.chat.models import User
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.common.exceptions.exceptions import (
    ConflictDuplicateError,
    InfrastructureError,
    ValidationFailedError,
)
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config

log = logging.getLogger("chatsync.chat.dedup")

DEFAULT_PERSONAL_CHAT_NAME = "Chat"


def canonical_pair(user_a: uuid.UUID, user_b: uuid.UUID) -> Tuple[uuid.UUID, uuid.UUID]:
    """Order a pair the way the store's unique key does (uuid byte order)."""
    return (user_a, user_b) if user_a.int <= user_b.int else (user_b, user_a)


def personal_chat_name(counterpart: Optional[User]) -> str:
    """Stored name of a new personal chat: counterpart's full name, else username."""
    if counterpart is None:
        return DEFAULT_PERSONAL_CHAT_NAME
    full_name = f"{counterpart.first_name or ''} {counterpart.last_name or ''}".strip()
    return full_name or counterpart.username or DEFAULT_PERSONAL_CHAT_NAME


class PersonalChatDeduplicator:
    """Race-safe findOrCreatePersonalChat on top of the store's unit of work"""

    def __init__(self, store: ChatStorePort, config: Optional[RealtimeConfig] = None):
        self._store = store
        self._config = config or get_realtime_config()

    async def find_or_create(self, requester_id: uuid.UUID, other_id: uuid.UUID) -> uuid.UUID:
        """
        Return the chat id of the requester's personal chat with other_id,
        creating it (chat + two memberships) when none exists.

        Raises:
            ValidationFailedError: requester and other user are the same
            UserNotFoundError: other user has no profile
        """
        if requester_id == other_id:
            raise ValidationFailedError("Cannot start a personal chat with yourself", field="other_user_id")

        try:
            chat_id, created = await self._store.find_or_create_personal_chat(requester_id, other_id)
        except ConflictDuplicateError:
            log.info(f"Personal chat race lost for pair {canonical_pair(requester_id, other_id)}, looking up winner")
            return await self._lookup_winner(requester_id, other_id)

        if created:
            log.info(f"Personal chat {chat_id} created by {requester_id} with {other_id}")
        return chat_id

    async def _lookup_winner(self, requester_id: uuid.UUID, other_id: uuid.UUID) -> uuid.UUID:
        attempts = self._config.dedup_lookup_attempts
        for attempt in range(1, attempts + 1):
            chat_id = await self._store.find_personal_chat(requester_id, other_id)
            if chat_id is not None:
                return chat_id
            # Winner not visible yet
            if attempt < attempts:
                await asyncio.sleep(self._config.dedup_lookup_delay)

        raise InfrastructureError(
            f"Personal chat for {requester_id}/{other_id} conflicted but was not found after {attempts} lookups"
        )
