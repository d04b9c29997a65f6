# =============================================================================
# File: chatsync/chat/enums.py
# Description: Chat domain enumerations
# =============================================================================

from enum import Enum


class ChatKind(str, Enum):
    """Kinds of chats"""
    PERSONAL = "personal"
    GROUP = "group"
    CHANNEL = "channel"


class MemberRole(str, Enum):
    """Membership roles"""
    ADMIN = "admin"
    MEMBER = "member"


class Capability(str, Enum):
    """Per-membership capability flags (column names on chat_members)"""
    ADD_MEMBERS = "can_add_members"
    PIN_MESSAGES = "can_pin_messages"
    DELETE_MESSAGES = "can_delete_messages"
    SEND_MESSAGES = "can_send_messages"


class ChatAction(str, Enum):
    """Actions decided by the Membership & Permission Authority"""
    # Capability-gated
    SEND_MESSAGE = "send_message"
    ADD_MEMBERS = "add_members"
    PIN_MESSAGE = "pin_message"
    DELETE_MESSAGE = "delete_message"

    # Role / identity gated
    EDIT_MESSAGE = "edit_message"
    DELETE_CHAT = "delete_chat"
    LEAVE_CHAT = "leave_chat"
    UPDATE_CHAT = "update_chat"
    MANAGE_MEMBERS = "manage_members"
    CREATE_INVITE = "create_invite"
    TOGGLE_FLAGS = "toggle_flags"
    READ_CHAT = "read_chat"
    JOIN_PUBLIC_CHANNEL = "join_public_channel"


class ChatFlag(str, Enum):
    """Per-chat boolean flags (column names on chats)"""
    PINNED = "is_pinned"
    ARCHIVED = "is_archived"
    MUTED = "is_muted"


class MessageType(str, Enum):
    """Types of messages"""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    FILE = "file"


class PrivacyLevel(str, Enum):
    """Audience of a privacy-controlled profile field"""
    EVERYONE = "everyone"
    CONTACTS = "contacts"
    NOBODY = "nobody"


class NotificationType(str, Enum):
    """Notification type tags"""
    MESSAGE = "message"
    MENTION = "mention"
    GROUP_INVITE = "group_invite"


class DirectoryView(str, Enum):
    """Directory projection filter"""
    ACTIVE = "active"
    ARCHIVED = "archived"


class PresenceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


CAPABILITY_FOR_ACTION = {
    ChatAction.SEND_MESSAGE: Capability.SEND_MESSAGES,
    ChatAction.ADD_MEMBERS: Capability.ADD_MEMBERS,
    ChatAction.PIN_MESSAGE: Capability.PIN_MESSAGES,
    ChatAction.DELETE_MESSAGE: Capability.DELETE_MESSAGES,
}
