"""
Tests for entity snapshots and command validation
"""
import uuid

import pytest
from pydantic import ValidationError

from chatsync.chat.commands import (
    Attachment,
    CreateChatCommand,
    JoinChatCommand,
    SendMessageCommand,
    build_command,
    infer_message_type,
)
from chatsync.chat.enums import Capability, ChatKind, MemberRole, MessageType
from chatsync.chat.models import Chat, Membership, Message, User
from chatsync.common.base.base_model import utc_now
from chatsync.common.exceptions.exceptions import ValidationFailedError


class TestEntities:

    def test_personal_chat_rejects_invite(self):
        with pytest.raises(ValidationError):
            Chat(id=uuid.uuid4(), chat_type=ChatKind.PERSONAL, created_by=uuid.uuid4(), invite_link="abc")

    def test_public_channel(self):
        chat = Chat(id=uuid.uuid4(), chat_type=ChatKind.CHANNEL, created_by=uuid.uuid4(), settings={"is_public": True})
        assert chat.is_public_channel
        group = chat.model_copy(update={"chat_type": ChatKind.GROUP})
        assert not group.is_public_channel

    def test_snapshots_are_frozen(self):
        chat = Chat(id=uuid.uuid4(), chat_type=ChatKind.GROUP, created_by=uuid.uuid4())
        with pytest.raises(ValidationError):
            chat.name = "changed"

    def test_message_needs_content_or_file(self):
        with pytest.raises(ValidationError):
            Message(id=uuid.uuid4(), chat_id=uuid.uuid4(), sender_id=uuid.uuid4(), content="  ", created_at=utc_now())

    def test_message_preview(self):
        base = dict(id=uuid.uuid4(), chat_id=uuid.uuid4(), sender_id=uuid.uuid4(), created_at=utc_now())
        assert Message(content=" hi ", **base).preview == "hi"
        attachment_only = Message(file_url="memory://x", file_name="a.pdf", message_type=MessageType.FILE, **base)
        assert attachment_only.preview == "a.pdf"

    def test_membership_capability(self):
        membership = Membership(chat_id=uuid.uuid4(), user_id=uuid.uuid4(), can_pin_messages=True)
        assert membership.has_capability(Capability.PIN_MESSAGES)
        assert not membership.has_capability(Capability.ADD_MEMBERS)
        assert membership.role == MemberRole.MEMBER

    def test_display_name_fallbacks(self):
        assert User(id=uuid.uuid4(), first_name="Ann", last_name="Lee").display_name == "Ann Lee"
        assert User(id=uuid.uuid4(), username="ann").display_name == "ann"
        assert User(id=uuid.uuid4()).display_name == "Unknown user"

    def test_bus_serialization(self):
        chat = Chat(id=uuid.uuid4(), chat_type=ChatKind.GROUP, created_by=uuid.uuid4())
        data = chat.to_dict_for_bus()
        assert data["id"] == str(chat.id)
        assert data["chat_type"] == "group"
        assert Chat.model_validate(data) == chat


class TestCommands:

    def test_build_command_maps_errors(self):
        with pytest.raises(ValidationFailedError) as exc_info:
            build_command(CreateChatCommand, name="   ")
        assert exc_info.value.field == "name"

    def test_personal_not_created_directly(self):
        with pytest.raises(ValidationFailedError):
            build_command(CreateChatCommand, name="Us", chat_type=ChatKind.PERSONAL)

    def test_empty_message_rejected(self):
        with pytest.raises(ValidationFailedError):
            build_command(SendMessageCommand, chat_id=uuid.uuid4(), content="  ")

    def test_join_needs_exactly_one_target(self):
        with pytest.raises(ValidationFailedError):
            build_command(JoinChatCommand)
        with pytest.raises(ValidationFailedError):
            build_command(JoinChatCommand, invite_token="abc", chat_id=uuid.uuid4())
        assert build_command(JoinChatCommand, invite_token="abc").invite_token == "abc"

    @pytest.mark.parametrize("content_type,is_voice,expected", [
        ("image/png", False, MessageType.IMAGE),
        ("video/mp4", False, MessageType.VIDEO),
        ("audio/ogg", False, MessageType.AUDIO),
        ("audio/ogg", True, MessageType.VOICE),
        ("application/pdf", False, MessageType.FILE),
        (None, False, MessageType.FILE),
    ])
    def test_infer_message_type(self, content_type, is_voice, expected):
        attachment = Attachment(data=b"x", file_name="f", content_type=content_type, is_voice=is_voice)
        assert infer_message_type(attachment) == expected

    def test_text_message_type(self):
        command = SendMessageCommand(chat_id=uuid.uuid4(), content="hi")
        assert command.resolved_type == MessageType.TEXT
