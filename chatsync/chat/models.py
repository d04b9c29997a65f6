# =============================================================================
# File: chatsync/chat/models.py
# Description: Chat domain entity snapshots and view models
# =============================================================================

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatsync.common.base.base_model import BaseEntity, utc_now
from chatsync.chat.enums import (
    Capability,
    ChatKind,
    MemberRole,
    MessageType,
    PrivacyLevel,
)


# =============================================================================
# User
# =============================================================================

class PrivacySettings(BaseModel):
    """Per-user privacy block (profiles.privacy_settings)"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    show_phone: PrivacyLevel = PrivacyLevel.EVERYONE
    show_last_seen: PrivacyLevel = PrivacyLevel.EVERYONE
    show_profile_photo: PrivacyLevel = PrivacyLevel.EVERYONE
    allow_calls: PrivacyLevel = PrivacyLevel.EVERYONE
    allow_groups: PrivacyLevel = PrivacyLevel.EVERYONE


class NotificationSettings(BaseModel):
    """Per-user notification block (profiles.notification_settings)"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    sound: bool = True
    vibration: bool = True
    preview: bool = True
    group_notifications: bool = True


class User(BaseEntity):
    """User profile (table: profiles)"""
    id: uuid.UUID
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None
    privacy_settings: PrivacySettings = Field(default_factory=PrivacySettings)
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)

    @property
    def display_name(self) -> str:
        full_name = " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return full_name or self.username or "Unknown user"


# =============================================================================
# Chat / Membership
# =============================================================================

class Chat(BaseEntity):
    """Chat row (table: chats)"""
    id: uuid.UUID
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    chat_type: ChatKind
    is_pinned: bool = False
    is_archived: bool = False
    is_muted: bool = False
    wallpaper_url: Optional[str] = None
    invite_link: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_by: uuid.UUID
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _personal_chats_have_no_invite(self) -> "Chat":
        if self.chat_type == ChatKind.PERSONAL and self.invite_link:
            raise ValueError("personal chats cannot carry an invite token")
        return self

    @property
    def is_personal(self) -> bool:
        return self.chat_type == ChatKind.PERSONAL

    @property
    def is_public_channel(self) -> bool:
        return self.chat_type == ChatKind.CHANNEL and bool(self.settings.get("is_public"))


class Membership(BaseEntity):
    """Chat membership (table: chat_members)"""
    chat_id: uuid.UUID
    user_id: uuid.UUID
    role: MemberRole = MemberRole.MEMBER
    can_add_members: bool = False
    can_pin_messages: bool = False
    can_delete_messages: bool = False
    can_send_messages: bool = True
    joined_at: datetime = Field(default_factory=utc_now)

    @property
    def is_admin(self) -> bool:
        return self.role == MemberRole.ADMIN

    def has_capability(self, capability: Capability) -> bool:
        return bool(getattr(self, capability.value))


# =============================================================================
# Message
# =============================================================================

class Message(BaseEntity):
    """Message row (table: messages)"""
    id: uuid.UUID
    chat_id: uuid.UUID
    sender_id: uuid.UUID
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    reply_to_id: Optional[uuid.UUID] = None
    is_edited: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _content_or_attachment(self) -> "Message":
        if not (self.content and self.content.strip()) and not self.file_url:
            raise ValueError("message has neither content nor attachment")
        return self

    @property
    def preview(self) -> str:
        if self.content and self.content.strip():
            return self.content.strip()
        return self.file_name or self.message_type.value


# =============================================================================
# Notification
# =============================================================================

class Notification(BaseEntity):
    """Notification row (table: notifications)"""
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    body: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# View models (engine-owned projections)
# =============================================================================

class ChatSummary(BaseModel):
    """Directory entry: chat row plus display identity and last-message preview"""
    model_config = ConfigDict(frozen=True)

    chat: Chat
    display_name: str
    display_avatar_url: Optional[str] = None
    counterpart_id: Optional[uuid.UUID] = None
    counterpart_online: Optional[bool] = None
    counterpart_last_seen: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    last_message_at: Optional[datetime] = None

    @property
    def id(self) -> uuid.UUID:
        return self.chat.id

    @property
    def is_pinned(self) -> bool:
        return self.chat.is_pinned

    @property
    def is_archived(self) -> bool:
        return self.chat.is_archived

    @property
    def updated_at(self) -> datetime:
        return self.chat.updated_at


class MessageView(BaseModel):
    """Message with sender display identity"""
    model_config = ConfigDict(frozen=True)

    message: Message
    sender_name: Optional[str] = None
    sender_avatar_url: Optional[str] = None

    @property
    def id(self) -> uuid.UUID:
        return self.message.id

    @property
    def created_at(self) -> datetime:
        return self.message.created_at
