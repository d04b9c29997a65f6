# =============================================================================
# File: chatsync/chat/commands.py
# Description: Chat domain commands
# =============================================================================

from __future__ import annotations

from typing import Optional, List, Dict, Any, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from chatsync.chat.enums import Capability, ChatFlag, ChatKind, MemberRole, MessageType
from chatsync.chat.models import NotificationSettings, PrivacySettings
from chatsync.common.exceptions.exceptions import ValidationFailedError

C = TypeVar("C", bound="Command")


class Command(BaseModel):
    """Base class for all commands. The acting user comes from the auth collaborator."""
    model_config = ConfigDict(frozen=True)


def build_command(command_cls: Type[C], **data: Any) -> C:
    """Construct a command, surfacing pydantic errors as ValidationFailedError."""
    try:
        return command_cls(**data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationFailedError(f"{command_cls.__name__}: {first.get('msg')}", field=field) from e


class Attachment(BaseModel):
    """Binary payload to upload before the row referencing it is written"""
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: Optional[str] = None
    is_voice: bool = False


def infer_message_type(attachment: Optional[Attachment]) -> MessageType:
    """Message type from the attachment's content type."""
    if attachment is None:
        return MessageType.TEXT
    if attachment.is_voice:
        return MessageType.VOICE
    major = (attachment.content_type or "").split("/", 1)[0]
    if major == "image":
        return MessageType.IMAGE
    if major == "video":
        return MessageType.VIDEO
    if major == "audio":
        return MessageType.AUDIO
    return MessageType.FILE


# =============================================================================
# Chat Lifecycle Commands
# =============================================================================

class FindOrCreatePersonalChatCommand(Command):
    """Open (or create) the one-to-one chat with another user"""
    other_user_id: UUID


class CreateChatCommand(Command):
    """Create a group or channel; the creator becomes its admin"""
    name: str = Field(..., max_length=255)
    chat_type: ChatKind = ChatKind.GROUP
    description: Optional[str] = Field(None, max_length=1000)
    member_ids: List[UUID] = Field(default_factory=list)
    is_public: bool = False
    allow_members_invite: bool = False

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator('chat_type')
    @classmethod
    def validate_chat_type(cls, v: ChatKind) -> ChatKind:
        if v == ChatKind.PERSONAL:
            raise ValueError("personal chats are created with FindOrCreatePersonalChatCommand")
        return v


class UpdateChatSettingsCommand(Command):
    """Update chat name, description, avatar, wallpaper or settings map"""
    chat_id: UUID
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    avatar: Optional[Attachment] = None
    wallpaper: Optional[Attachment] = None
    clear_wallpaper: bool = False
    settings: Optional[Dict[str, Any]] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("name must not be blank")
        return v.strip() if v else v

    @model_validator(mode="after")
    def _wallpaper_choice(self) -> "UpdateChatSettingsCommand":
        if self.wallpaper is not None and self.clear_wallpaper:
            raise ValueError("wallpaper and clear_wallpaper are mutually exclusive")
        return self


class ToggleChatFlagCommand(Command):
    """Set or flip pin/archive/mute; value=None flips the current value"""
    chat_id: UUID
    flag: ChatFlag
    value: Optional[bool] = None


class DeleteChatCommand(Command):
    """Permanently delete a chat (creator only)"""
    chat_id: UUID


class CreateInviteCommand(Command):
    """Generate (or rotate) the invite token of a group/channel"""
    chat_id: UUID


class JoinChatCommand(Command):
    """Join by invite token, or a public channel by id"""
    invite_token: Optional[str] = Field(None, min_length=1, max_length=128)
    chat_id: Optional[UUID] = None

    @model_validator(mode="after")
    def _one_target(self) -> "JoinChatCommand":
        if (self.invite_token is None) == (self.chat_id is None):
            raise ValueError("exactly one of invite_token or chat_id is required")
        return self


# =============================================================================
# Membership Commands
# =============================================================================

class AddMembersCommand(Command):
    """Add users to a group/channel"""
    chat_id: UUID
    user_ids: List[UUID] = Field(..., min_length=1)


class RemoveMemberCommand(Command):
    """Remove another member from a group/channel"""
    chat_id: UUID
    user_id: UUID


class LeaveChatCommand(Command):
    """Leave chat voluntarily"""
    chat_id: UUID


class ChangeMemberRoleCommand(Command):
    """Change a member's role and/or capability flags"""
    chat_id: UUID
    user_id: UUID
    role: Optional[MemberRole] = None
    capabilities: Dict[Capability, bool] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _has_change(self) -> "ChangeMemberRoleCommand":
        if self.role is None and not self.capabilities:
            raise ValueError("nothing to change")
        return self


# =============================================================================
# Message Commands
# =============================================================================

class SendMessageCommand(Command):
    """
    Send message to chat.

    With an attachment the blob is uploaded first and the message row written
    second; message_type is inferred from the attachment when not given.
    """
    chat_id: UUID
    content: Optional[str] = Field(None, max_length=10000)
    message_type: Optional[MessageType] = None
    attachment: Optional[Attachment] = None
    reply_to_id: Optional[UUID] = None

    @model_validator(mode="after")
    def _content_or_attachment(self) -> "SendMessageCommand":
        if not (self.content and self.content.strip()) and self.attachment is None:
            raise ValueError("message must have content or an attachment")
        return self

    @property
    def resolved_type(self) -> MessageType:
        return self.message_type or infer_message_type(self.attachment)


class EditMessageCommand(Command):
    """Edit an existing message (sender only)"""
    message_id: UUID
    new_content: str = Field(..., max_length=10000)

    @field_validator('new_content')
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("new_content must not be blank")
        return v


class DeleteMessageCommand(Command):
    """Delete a message"""
    message_id: UUID


class PinMessageCommand(Command):
    """Pin a message in the chat header; message_id=None unpins"""
    chat_id: UUID
    message_id: Optional[UUID] = None


# =============================================================================
# Profile Commands
# =============================================================================

class UpdateProfileCommand(Command):
    """Update own profile and preference blocks"""
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    username: Optional[str] = Field(None, min_length=3, max_length=32, pattern=r"^[A-Za-z0-9_]+$")
    avatar: Optional[Attachment] = None
    privacy_settings: Optional[PrivacySettings] = None
    notification_settings: Optional[NotificationSettings] = None
