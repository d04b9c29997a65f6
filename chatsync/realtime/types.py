# =============================================================================
# File: chatsync/realtime/types.py
# Description: Change-feed types (topics, change events, resync markers)
# =============================================================================

"""
Change-Feed Types

- ChangeOperation / ChangeTable: wire enums
- Topic: a server-side filtered channel ("messages:chat_id=eq.<id>")
- ChangeEvent: validated {op, table, before, after}
- ResyncRequired: emitted after reconnection; owner must refetch

Payloads are validated here, at the subscription boundary. Anything that
fails validation raises MalformedChangeError and never reaches a reconciler.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import ValidationError

from chatsync.chat.models import Chat, Membership, Message, Notification
from chatsync.common.base.base_model import BaseEntity
from chatsync.common.exceptions.exceptions import MalformedChangeError


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeTable(str, Enum):
    CHATS = "chats"
    CHAT_MEMBERS = "chat_members"
    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"


ENTITY_FOR_TABLE: Dict[ChangeTable, Type[BaseEntity]] = {
    ChangeTable.CHATS: Chat,
    ChangeTable.CHAT_MEMBERS: Membership,
    ChangeTable.MESSAGES: Message,
    ChangeTable.NOTIFICATIONS: Notification,
}


# ─────────────────────────────────────────────────────────────────────────────
# Topics
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Topic:
    """Row filter evaluated server-side: table rows where column = value"""
    table: ChangeTable
    column: str
    value: uuid.UUID

    @property
    def channel(self) -> str:
        return f"{self.table.value}:{self.column}=eq.{self.value}"

    @classmethod
    def chats_for_member(cls, user_id: uuid.UUID) -> "Topic":
        return cls(ChangeTable.CHATS, "member_id", user_id)

    @classmethod
    def messages_in_chat(cls, chat_id: uuid.UUID) -> "Topic":
        return cls(ChangeTable.MESSAGES, "chat_id", chat_id)

    @classmethod
    def notifications_for_user(cls, user_id: uuid.UUID) -> "Topic":
        return cls(ChangeTable.NOTIFICATIONS, "user_id", user_id)

    def __str__(self) -> str:
        return self.channel


# ─────────────────────────────────────────────────────────────────────────────
# Feed items
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChangeEvent:
    """A validated row change"""
    op: ChangeOperation
    table: ChangeTable
    before: Optional[BaseEntity] = None
    after: Optional[BaseEntity] = None

    @property
    def entity(self) -> BaseEntity:
        """Row the change is about: the new image, or the old one for deletes."""
        return self.after if self.after is not None else self.before


@dataclass(frozen=True)
class ResyncRequired:
    """Deltas may have been missed; the owner must perform a full fetch"""
    topic: Topic
    reason: str = "reconnected"


FeedItem = Union[ChangeEvent, ResyncRequired]


# ─────────────────────────────────────────────────────────────────────────────
# Wire codec
# ─────────────────────────────────────────────────────────────────────────────

def encode_change(
    op: ChangeOperation,
    table: ChangeTable,
    before: Optional[BaseEntity] = None,
    after: Optional[BaseEntity] = None,
) -> Dict[str, Any]:
    """Build the {operation, table, before?, after?} wire payload."""
    payload: Dict[str, Any] = {"operation": op.value, "table": table.value}
    if before is not None:
        payload["before"] = before.to_dict_for_bus()
    if after is not None:
        payload["after"] = after.to_dict_for_bus()
    return payload


def parse_change(payload: Any) -> ChangeEvent:
    """
    Validate a raw wire payload into a ChangeEvent.

    Raises:
        MalformedChangeError: unknown op/table, missing row image, or a row
            image that fails its entity model
    """
    if not isinstance(payload, dict):
        raise MalformedChangeError(f"Change payload must be an object, got {type(payload).__name__}")

    try:
        op = ChangeOperation(payload.get("operation"))
        table = ChangeTable(payload.get("table"))
    except ValueError as e:
        raise MalformedChangeError(str(e), details={"payload": payload}) from e

    model = ENTITY_FOR_TABLE[table]
    raw_before = payload.get("before")
    raw_after = payload.get("after")

    if op in (ChangeOperation.INSERT, ChangeOperation.UPDATE) and raw_after is None:
        raise MalformedChangeError(f"{op.value} on {table.value} without 'after'")
    if op == ChangeOperation.DELETE and raw_before is None:
        raise MalformedChangeError(f"DELETE on {table.value} without 'before'")

    try:
        before = model.model_validate(raw_before) if raw_before is not None else None
        after = model.model_validate(raw_after) if raw_after is not None else None
    except ValidationError as e:
        raise MalformedChangeError(
            f"Invalid {table.value} row: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
        ) from e

    return ChangeEvent(op=op, table=table, before=before, after=after)
