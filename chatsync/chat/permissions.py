# =============================================================================
# File: chatsync/chat/permissions.py
# Description: Membership & Permission Authority
# =============================================================================

"""
Membership & Permission Authority

Pure decision function over a membership record (or its absence). No I/O,
no side effects; every command path calls it before dispatch and the store
enforces the same rules with row-level policies (chatsync/database/chatsync.sql).

Rules:
    no membership      -> deny everything except joining a public channel
    admin              -> all capability-gated actions
    member             -> capability-gated action only if its flag is set
    delete chat        -> creator only (not any admin, membership not required)
    leave chat         -> any member
    edit message       -> original sender only
    delete message     -> own message, or the delete-messages capability
    update chat / manage members -> admin
    create invite      -> admin or add-members capability
    toggle pin/archive/mute, read -> any member
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import FrozenSet, Optional

from chatsync.chat.enums import CAPABILITY_FOR_ACTION, Capability, ChatAction
from chatsync.chat.exceptions import ActionDeniedError
from chatsync.chat.models import Chat, Membership, Message


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check"""
    action: ChatAction
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def _allow(action: ChatAction) -> Decision:
    return Decision(action=action, allowed=True)


def _deny(action: ChatAction, reason: str) -> Decision:
    return Decision(action=action, allowed=False, reason=reason)


_ANY_MEMBER_ACTIONS = frozenset({
    ChatAction.LEAVE_CHAT,
    ChatAction.READ_CHAT,
    ChatAction.TOGGLE_FLAGS,
})

_ADMIN_ACTIONS = frozenset({
    ChatAction.UPDATE_CHAT,
    ChatAction.MANAGE_MEMBERS,
})


class MembershipAuthority:
    """
    Answers "can user U perform action A on chat C".

    Usage:
        decision = MembershipAuthority.decide(ChatAction.SEND_MESSAGE, membership)
        MembershipAuthority.require(ChatAction.DELETE_CHAT, membership, chat=chat, actor_id=me)
    """

    @staticmethod
    def capabilities(membership: Optional[Membership]) -> FrozenSet[Capability]:
        """Effective capabilities: all for admins, flagged ones for members."""
        if membership is None:
            return frozenset()
        if membership.is_admin:
            return frozenset(Capability)
        return frozenset(c for c in Capability if membership.has_capability(c))

    @classmethod
    def decide(
        cls,
        action: ChatAction,
        membership: Optional[Membership],
        *,
        chat: Optional[Chat] = None,
        actor_id: Optional[uuid.UUID] = None,
        message: Optional[Message] = None,
    ) -> Decision:
        if membership is not None:
            if actor_id is not None and membership.user_id != actor_id:
                return _deny(action, "membership belongs to another user")
            if chat is not None and membership.chat_id != chat.id:
                return _deny(action, "membership belongs to another chat")
            actor_id = membership.user_id

        # Creator-only, checked before the membership gate
        if action == ChatAction.DELETE_CHAT:
            if chat is None or actor_id is None:
                return _deny(action, "chat and actor are required")
            if chat.created_by == actor_id:
                return _allow(action)
            return _deny(action, "only the creator can delete a chat")

        if action == ChatAction.JOIN_PUBLIC_CHANNEL:
            if membership is not None:
                return _deny(action, "already a member")
            if chat is not None and chat.is_public_channel:
                return _allow(action)
            return _deny(action, "chat is not a public channel")

        if membership is None:
            return _deny(action, "not a member of this chat")

        if action in _ANY_MEMBER_ACTIONS:
            return _allow(action)

        if action == ChatAction.EDIT_MESSAGE:
            if message is None:
                return _deny(action, "message is required")
            if message.sender_id == membership.user_id:
                return _allow(action)
            return _deny(action, "only the sender can edit a message")

        if action == ChatAction.DELETE_MESSAGE and message is not None:
            if message.sender_id == membership.user_id:
                return _allow(action)

        if action in CAPABILITY_FOR_ACTION:
            capability = CAPABILITY_FOR_ACTION[action]
            if capability in cls.capabilities(membership):
                return _allow(action)
            return _deny(action, f"missing capability {capability.value}")

        if action == ChatAction.CREATE_INVITE:
            if Capability.ADD_MEMBERS in cls.capabilities(membership):
                return _allow(action)
            return _deny(action, "missing capability can_add_members")

        if action in _ADMIN_ACTIONS:
            if membership.is_admin:
                return _allow(action)
            return _deny(action, "admin role required")

        return _deny(action, "unknown action")

    @classmethod
    def require(
        cls,
        action: ChatAction,
        membership: Optional[Membership],
        *,
        chat: Optional[Chat] = None,
        actor_id: Optional[uuid.UUID] = None,
        message: Optional[Message] = None,
    ) -> None:
        """Raise ActionDeniedError unless the action is allowed."""
        decision = cls.decide(action, membership, chat=chat, actor_id=actor_id, message=message)
        if not decision:
            who = actor_id or (membership.user_id if membership else None)
            raise ActionDeniedError(str(who), action.value, decision.reason)
