"""
Tests for the Membership & Permission Authority
"""
import uuid

import pytest

from chatsync.chat.enums import Capability, ChatAction, ChatKind, MemberRole
from chatsync.chat.exceptions import ActionDeniedError
from chatsync.chat.models import Chat, Membership, Message
from chatsync.chat.permissions import MembershipAuthority
from chatsync.common.base.base_model import utc_now
from chatsync.common.exceptions.exceptions import PermissionDeniedError

CREATOR = uuid.uuid4()
MEMBER = uuid.uuid4()
STRANGER = uuid.uuid4()


@pytest.fixture
def chat():
    return Chat(id=uuid.uuid4(), name="Team", chat_type=ChatKind.GROUP, created_by=CREATOR)


@pytest.fixture
def public_channel():
    return Chat(
        id=uuid.uuid4(), name="News", chat_type=ChatKind.CHANNEL,
        created_by=CREATOR, settings={"is_public": True},
    )


def membership(chat, user_id, role=MemberRole.MEMBER, **flags):
    return Membership(chat_id=chat.id, user_id=user_id, role=role, **flags)


def message(chat, sender_id):
    return Message(id=uuid.uuid4(), chat_id=chat.id, sender_id=sender_id, content="hi", created_at=utc_now())


class TestNonMembers:
    """No membership denies everything but joining a public channel"""

    @pytest.mark.parametrize("action", [
        ChatAction.SEND_MESSAGE,
        ChatAction.READ_CHAT,
        ChatAction.LEAVE_CHAT,
        ChatAction.ADD_MEMBERS,
        ChatAction.TOGGLE_FLAGS,
        ChatAction.UPDATE_CHAT,
    ])
    def test_denied(self, chat, action):
        decision = MembershipAuthority.decide(action, None, chat=chat, actor_id=STRANGER)
        assert not decision
        assert decision.reason == "not a member of this chat"

    def test_can_join_public_channel(self, public_channel):
        assert MembershipAuthority.decide(ChatAction.JOIN_PUBLIC_CHANNEL, None, chat=public_channel)

    def test_cannot_join_private_group(self, chat):
        assert not MembershipAuthority.decide(ChatAction.JOIN_PUBLIC_CHANNEL, None, chat=chat)

    def test_existing_member_does_not_join_again(self, public_channel):
        held = membership(public_channel, MEMBER)
        assert not MembershipAuthority.decide(ChatAction.JOIN_PUBLIC_CHANNEL, held, chat=public_channel)


class TestCapabilities:
    """Members need the flag, admins hold every capability"""

    def test_admin_holds_all_capabilities(self, chat):
        admin = membership(chat, CREATOR, role=MemberRole.ADMIN)
        assert MembershipAuthority.capabilities(admin) == frozenset(Capability)

    def test_member_default_capabilities(self, chat):
        assert MembershipAuthority.capabilities(membership(chat, MEMBER)) == {Capability.SEND_MESSAGES}

    def test_member_without_flag_denied(self, chat):
        decision = MembershipAuthority.decide(ChatAction.ADD_MEMBERS, membership(chat, MEMBER))
        assert not decision
        assert "can_add_members" in decision.reason

    def test_member_with_flag_allowed(self, chat):
        held = membership(chat, MEMBER, can_pin_messages=True)
        assert MembershipAuthority.decide(ChatAction.PIN_MESSAGE, held)

    def test_read_only_member_cannot_send(self, chat):
        held = membership(chat, MEMBER, can_send_messages=False)
        assert not MembershipAuthority.decide(ChatAction.SEND_MESSAGE, held)

    def test_create_invite_follows_add_members(self, chat):
        assert not MembershipAuthority.decide(ChatAction.CREATE_INVITE, membership(chat, MEMBER))
        assert MembershipAuthority.decide(ChatAction.CREATE_INVITE, membership(chat, MEMBER, can_add_members=True))

    def test_admin_only_actions(self, chat):
        assert not MembershipAuthority.decide(ChatAction.UPDATE_CHAT, membership(chat, MEMBER))
        assert MembershipAuthority.decide(ChatAction.UPDATE_CHAT, membership(chat, CREATOR, role=MemberRole.ADMIN))

    def test_any_member_may_toggle_flags(self, chat):
        assert MembershipAuthority.decide(ChatAction.TOGGLE_FLAGS, membership(chat, MEMBER))


class TestChatDeletion:
    """Only the creator deletes, even among admins"""

    def test_creator_allowed(self, chat):
        held = membership(chat, CREATOR, role=MemberRole.ADMIN)
        assert MembershipAuthority.decide(ChatAction.DELETE_CHAT, held, chat=chat)

    def test_other_admin_denied(self, chat):
        held = membership(chat, MEMBER, role=MemberRole.ADMIN)
        decision = MembershipAuthority.decide(ChatAction.DELETE_CHAT, held, chat=chat)
        assert not decision
        assert decision.reason == "only the creator can delete a chat"

    def test_creator_without_membership_allowed(self, chat):
        assert MembershipAuthority.decide(ChatAction.DELETE_CHAT, None, chat=chat, actor_id=CREATOR)


class TestMessageActions:
    """Edit is sender-only; delete is own message or the capability"""

    def test_sender_edits(self, chat):
        held = membership(chat, MEMBER)
        assert MembershipAuthority.decide(ChatAction.EDIT_MESSAGE, held, message=message(chat, MEMBER))

    def test_admin_cannot_edit_others(self, chat):
        held = membership(chat, CREATOR, role=MemberRole.ADMIN)
        assert not MembershipAuthority.decide(ChatAction.EDIT_MESSAGE, held, message=message(chat, MEMBER))

    def test_member_deletes_own_message(self, chat):
        held = membership(chat, MEMBER)
        assert MembershipAuthority.decide(ChatAction.DELETE_MESSAGE, held, message=message(chat, MEMBER))

    def test_member_cannot_delete_others_message(self, chat):
        held = membership(chat, MEMBER)
        assert not MembershipAuthority.decide(ChatAction.DELETE_MESSAGE, held, message=message(chat, CREATOR))

    def test_moderator_deletes_others_message(self, chat):
        held = membership(chat, MEMBER, can_delete_messages=True)
        assert MembershipAuthority.decide(ChatAction.DELETE_MESSAGE, held, message=message(chat, CREATOR))


class TestRequire:
    """require() raises the permission error"""

    def test_raises_action_denied(self, chat):
        with pytest.raises(ActionDeniedError) as exc_info:
            MembershipAuthority.require(ChatAction.SEND_MESSAGE, None, chat=chat, actor_id=STRANGER)
        assert isinstance(exc_info.value, PermissionDeniedError)
        assert exc_info.value.action == "send_message"

    def test_membership_of_another_user_rejected(self, chat):
        held = membership(chat, MEMBER)
        assert not MembershipAuthority.decide(ChatAction.READ_CHAT, held, actor_id=STRANGER)

    def test_allowed_returns_none(self, chat):
        assert MembershipAuthority.require(ChatAction.READ_CHAT, membership(chat, MEMBER)) is None
