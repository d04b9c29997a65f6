# =============================================================================
# File: chatsync/chat/service.py
# Description: Chat command service
# =============================================================================

"""
ChatCommandService

Every command follows the same path:
    current user (AuthPort) -> membership lookup -> MembershipAuthority
    -> payload checks -> one store unit of work

Effects are observed through the change feed. Only find-or-create and
send-message return ids.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from chatsync.chat.commands import (
    AddMembersCommand,
    Attachment,
    ChangeMemberRoleCommand,
    CreateChatCommand,
    CreateInviteCommand,
    DeleteChatCommand,
    DeleteMessageCommand,
    EditMessageCommand,
    FindOrCreatePersonalChatCommand,
    JoinChatCommand,
    LeaveChatCommand,
    PinMessageCommand,
    RemoveMemberCommand,
    SendMessageCommand,
    ToggleChatFlagCommand,
    UpdateChatSettingsCommand,
    UpdateProfileCommand,
)
from chatsync.chat.dedup import PersonalChatDeduplicator
from chatsync.chat.enums import ChatAction, ChatKind, MemberRole, PrivacyLevel
from chatsync.chat.exceptions import (
    ActionDeniedError,
    ChatNotFoundError,
    MemberNotFoundError,
    MessageNotFoundError,
    MessageSendFailedError,
    PersonalChatInvariantError,
    UserNotFoundError,
)
from chatsync.chat.models import Chat, Membership, Message, User
from chatsync.chat.permissions import MembershipAuthority
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.chat.ports.object_storage_port import AuthPort, ObjectStoragePort
from chatsync.common.base.base_model import utc_now
from chatsync.common.base.base_storage_provider import BaseStorageProvider
from chatsync.common.exceptions.exceptions import (
    NotFoundError,
    UnauthenticatedError,
    ValidationFailedError,
)
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.config.storage_config import StorageConfig, get_storage_config
from chatsync.utils.uuid_utils import generate_invite_token, generate_uuid

log = logging.getLogger("chatsync.chat.service")


def creator_membership(chat_id: uuid.UUID, user_id: uuid.UUID) -> Membership:
    """Creator of a chat: admin with every capability."""
    return Membership(
        chat_id=chat_id,
        user_id=user_id,
        role=MemberRole.ADMIN,
        can_add_members=True,
        can_pin_messages=True,
        can_delete_messages=True,
        can_send_messages=True,
    )


def member_membership(chat_id: uuid.UUID, user_id: uuid.UUID, chat_type: ChatKind) -> Membership:
    """Plain member; channel members read only."""
    return Membership(
        chat_id=chat_id,
        user_id=user_id,
        role=MemberRole.MEMBER,
        can_send_messages=chat_type != ChatKind.CHANNEL,
    )


class ChatCommandService:
    """Authorized command dispatch onto the backing store"""

    def __init__(
        self,
        store: ChatStorePort,
        storage: ObjectStoragePort,
        auth: AuthPort,
        realtime_config: Optional[RealtimeConfig] = None,
        storage_config: Optional[StorageConfig] = None,
    ):
        self._store = store
        self._storage = storage
        self._auth = auth
        self._storage_config = storage_config or get_storage_config()
        self._dedup = PersonalChatDeduplicator(store, realtime_config or get_realtime_config())

    # =========================================================================
    # Helpers
    # =========================================================================

    def _actor(self) -> uuid.UUID:
        user_id = self._auth.current_user_id()
        if user_id is None:
            raise UnauthenticatedError()
        return user_id

    async def _chat(self, chat_id: uuid.UUID) -> Chat:
        chat = await self._store.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(str(chat_id))
        return chat

    async def _membership(self, chat_id: uuid.UUID, actor_id: uuid.UUID) -> Optional[Membership]:
        """
        The actor's membership. No membership and no chat means the chat is
        gone: ChatNotFoundError, not a permission denial.
        """
        membership = await self._store.get_membership(chat_id, actor_id)
        if membership is None and await self._store.get_chat(chat_id) is None:
            raise ChatNotFoundError(str(chat_id))
        return membership

    async def _message(self, message_id: uuid.UUID) -> Message:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(str(message_id))
        return message

    async def _users_for_group(self, actor_id: uuid.UUID, user_ids: List[uuid.UUID]) -> Dict[uuid.UUID, User]:
        users = await self._store.get_users(user_ids)
        for user_id in user_ids:
            user = users.get(user_id)
            if user is None:
                raise UserNotFoundError(str(user_id))
            if user.privacy_settings.allow_groups == PrivacyLevel.NOBODY:
                raise ActionDeniedError(
                    str(actor_id), ChatAction.ADD_MEMBERS.value,
                    f"user {user_id} does not accept group invitations",
                )
        return users

    async def _upload(self, bucket: str, key: str, attachment: Attachment, limit: int) -> str:
        if len(attachment.data) > limit:
            raise ValidationFailedError(
                f"Attachment {attachment.file_name} exceeds {limit} bytes", field="attachment"
            )
        ext = BaseStorageProvider.guess_extension(attachment.content_type, attachment.file_name)
        path = f"{bucket}/{key}{ext}"
        return await self._storage.upload(path, attachment.data, attachment.content_type)

    # =========================================================================
    # Chats
    # =========================================================================

    async def find_or_create_personal_chat(self, command: FindOrCreatePersonalChatCommand) -> uuid.UUID:
        actor_id = self._actor()
        return await self._dedup.find_or_create(actor_id, command.other_user_id)

    async def create_chat(self, command: CreateChatCommand) -> uuid.UUID:
        actor_id = self._actor()
        member_ids = [u for u in dict.fromkeys(command.member_ids) if u != actor_id]
        await self._users_for_group(actor_id, member_ids)

        now = utc_now()
        chat = Chat(
            id=generate_uuid(),
            name=command.name,
            description=command.description,
            chat_type=command.chat_type,
            settings={
                "is_public": command.is_public,
                "allow_members_invite": command.allow_members_invite,
            },
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        memberships = [creator_membership(chat.id, actor_id)]
        memberships.extend(member_membership(chat.id, u, chat.chat_type) for u in member_ids)

        created = await self._store.create_chat(chat, memberships)
        log.info(f"{chat.chat_type.value.capitalize()} {created.id} created by {actor_id} with {len(member_ids)} members")
        return created.id

    async def update_chat_settings(self, command: UpdateChatSettingsCommand) -> Chat:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        MembershipAuthority.require(ChatAction.UPDATE_CHAT, membership, chat=chat, actor_id=actor_id)

        if chat.is_personal and (command.name is not None or command.description is not None):
            raise PersonalChatInvariantError("rename")

        changes: Dict[str, Any] = {}
        if command.name is not None:
            changes["name"] = command.name
        if command.description is not None:
            changes["description"] = command.description
        if command.settings is not None:
            changes["settings"] = {**chat.settings, **command.settings}
        if command.clear_wallpaper:
            changes["wallpaper_url"] = None

        cfg = self._storage_config
        if command.avatar is not None:
            changes["avatar_url"] = await self._upload(
                cfg.avatars_bucket, f"chats/{chat.id}/{generate_uuid()}", command.avatar, cfg.max_avatar_bytes
            )
        if command.wallpaper is not None:
            changes["wallpaper_url"] = await self._upload(
                cfg.wallpapers_bucket, f"{chat.id}/{generate_uuid()}", command.wallpaper, cfg.max_wallpaper_bytes
            )

        if not changes:
            return chat
        return await self._store.update_chat(actor_id, chat.id, changes)

    async def toggle_flag(self, command: ToggleChatFlagCommand) -> bool:
        """Returns the new flag value."""
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        MembershipAuthority.require(ChatAction.TOGGLE_FLAGS, membership, actor_id=actor_id)

        chat = await self._chat(command.chat_id)
        value = command.value if command.value is not None else not getattr(chat, command.flag.value)
        if getattr(chat, command.flag.value) == value:
            return value
        await self._store.update_chat(actor_id, chat.id, {command.flag.value: value})
        return value

    async def delete_chat(self, command: DeleteChatCommand) -> None:
        actor_id = self._actor()
        chat = await self._chat(command.chat_id)
        membership = await self._store.get_membership(chat.id, actor_id)
        MembershipAuthority.require(ChatAction.DELETE_CHAT, membership, chat=chat, actor_id=actor_id)
        await self._store.delete_chat(actor_id, chat.id)
        log.info(f"Chat {chat.id} deleted by {actor_id}")

    async def create_invite(self, command: CreateInviteCommand) -> str:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        if chat.is_personal:
            raise PersonalChatInvariantError("invite links")
        MembershipAuthority.require(ChatAction.CREATE_INVITE, membership, chat=chat, actor_id=actor_id)

        token = generate_invite_token()
        await self._store.update_chat(actor_id, chat.id, {"invite_link": token})
        return token

    async def join_chat(self, command: JoinChatCommand) -> uuid.UUID:
        actor_id = self._actor()
        if command.invite_token is not None:
            chat = await self._store.find_chat_by_invite(command.invite_token)
            if chat is None:
                raise NotFoundError("Invite link is invalid or has been revoked")
        else:
            chat = await self._chat(command.chat_id)
            membership = await self._store.get_membership(chat.id, actor_id)
            if membership is not None:
                return chat.id
            MembershipAuthority.require(ChatAction.JOIN_PUBLIC_CHANNEL, None, chat=chat, actor_id=actor_id)

        await self._store.join_chat(actor_id, chat.id, command.invite_token)
        return chat.id

    # =========================================================================
    # Memberships
    # =========================================================================

    async def add_members(self, command: AddMembersCommand) -> List[uuid.UUID]:
        """Returns the ids actually added (existing members are skipped)."""
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        if chat.is_personal:
            raise PersonalChatInvariantError("add members")
        MembershipAuthority.require(ChatAction.ADD_MEMBERS, membership, chat=chat, actor_id=actor_id)

        user_ids = list(dict.fromkeys(command.user_ids))
        await self._users_for_group(actor_id, user_ids)
        created = await self._store.add_members(
            actor_id, [member_membership(chat.id, u, chat.chat_type) for u in user_ids]
        )
        return [m.user_id for m in created]

    async def remove_member(self, command: RemoveMemberCommand) -> None:
        actor_id = self._actor()
        if command.user_id == actor_id:
            await self.leave_chat(LeaveChatCommand(chat_id=command.chat_id))
            return

        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        if chat.is_personal:
            raise PersonalChatInvariantError("remove members")
        MembershipAuthority.require(ChatAction.MANAGE_MEMBERS, membership, chat=chat, actor_id=actor_id)

        if await self._store.get_membership(chat.id, command.user_id) is None:
            raise MemberNotFoundError(str(chat.id), str(command.user_id))
        await self._store.remove_member(actor_id, chat.id, command.user_id)

    async def leave_chat(self, command: LeaveChatCommand) -> None:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        if chat.is_personal:
            raise PersonalChatInvariantError("leave")
        MembershipAuthority.require(ChatAction.LEAVE_CHAT, membership, chat=chat, actor_id=actor_id)
        await self._store.remove_member(actor_id, chat.id, actor_id)

    async def change_member_role(self, command: ChangeMemberRoleCommand) -> Membership:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        chat = await self._chat(command.chat_id)
        if chat.is_personal:
            raise PersonalChatInvariantError("change roles")
        MembershipAuthority.require(ChatAction.MANAGE_MEMBERS, membership, chat=chat, actor_id=actor_id)

        target = await self._store.get_membership(chat.id, command.user_id)
        if target is None:
            raise MemberNotFoundError(str(chat.id), str(command.user_id))

        changes: Dict[str, Any] = {c.value: v for c, v in command.capabilities.items()}
        if command.role is not None and command.role != target.role:
            if target.is_admin:
                admins = [m for m in await self._store.list_memberships(chat.id) if m.is_admin]
                if len(admins) <= 1:
                    raise ValidationFailedError("A chat must keep at least one admin", field="role")
            changes["role"] = command.role.value
        if not changes:
            return target
        return await self._store.update_membership(actor_id, chat.id, command.user_id, changes)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(self, command: SendMessageCommand) -> uuid.UUID:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        MembershipAuthority.require(ChatAction.SEND_MESSAGE, membership, actor_id=actor_id)

        if command.reply_to_id is not None:
            replied = await self._store.get_message(command.reply_to_id)
            if replied is None or replied.chat_id != command.chat_id:
                raise ValidationFailedError("Reply must reference a message of the same chat", field="reply_to_id")

        file_url: Optional[str] = None
        file_name: Optional[str] = None
        if command.attachment is not None:
            cfg = self._storage_config
            file_name = command.attachment.file_name
            file_url = await self._upload(
                cfg.chat_files_bucket, f"{command.chat_id}/{generate_uuid()}", command.attachment, cfg.max_file_bytes
            )

        content = command.content.strip() if command.content and command.content.strip() else None
        message = Message(
            id=generate_uuid(),
            chat_id=command.chat_id,
            sender_id=actor_id,
            content=content,
            message_type=command.resolved_type,
            file_url=file_url,
            file_name=file_name,
            reply_to_id=command.reply_to_id,
            created_at=utc_now(),
        )

        if file_url is None:
            stored = await self._store.insert_message(message)
            return stored.id

        try:
            stored = await self._store.insert_message(message)
        except Exception as e:
            # Uploaded blob is left in place; resubmitting uploads again
            log.warning(f"Message insert failed after upload of {file_url}: {e}")
            raise MessageSendFailedError(str(command.chat_id), file_url, e) from e
        return stored.id

    async def edit_message(self, command: EditMessageCommand) -> Message:
        actor_id = self._actor()
        message = await self._message(command.message_id)
        membership = await self._membership(message.chat_id, actor_id)
        MembershipAuthority.require(ChatAction.EDIT_MESSAGE, membership, actor_id=actor_id, message=message)
        return await self._store.update_message(
            actor_id, message.id, {"content": command.new_content, "is_edited": True}
        )

    async def delete_message(self, command: DeleteMessageCommand) -> None:
        actor_id = self._actor()
        message = await self._message(command.message_id)
        membership = await self._membership(message.chat_id, actor_id)
        MembershipAuthority.require(ChatAction.DELETE_MESSAGE, membership, actor_id=actor_id, message=message)
        await self._store.delete_message(actor_id, message.id)

    async def pin_message(self, command: PinMessageCommand) -> None:
        actor_id = self._actor()
        membership = await self._membership(command.chat_id, actor_id)
        MembershipAuthority.require(ChatAction.PIN_MESSAGE, membership, actor_id=actor_id)

        chat = await self._chat(command.chat_id)
        settings = dict(chat.settings)
        if command.message_id is None:
            settings.pop("pinned_message_id", None)
        else:
            message = await self._message(command.message_id)
            if message.chat_id != chat.id:
                raise ValidationFailedError("Pinned message must belong to the chat", field="message_id")
            settings["pinned_message_id"] = str(message.id)
        await self._store.update_chat(actor_id, chat.id, {"settings": settings})

    # =========================================================================
    # Profile
    # =========================================================================

    async def update_profile(self, command: UpdateProfileCommand) -> User:
        actor_id = self._actor()
        changes: Dict[str, Any] = command.model_dump(
            exclude_none=True,
            exclude={"avatar", "privacy_settings", "notification_settings"},
        )
        if command.privacy_settings is not None:
            changes["privacy_settings"] = command.privacy_settings.model_dump(mode="json")
        if command.notification_settings is not None:
            changes["notification_settings"] = command.notification_settings.model_dump(mode="json")
        if command.avatar is not None:
            cfg = self._storage_config
            changes["avatar_url"] = await self._upload(
                cfg.avatars_bucket, f"{actor_id}/{generate_uuid()}", command.avatar, cfg.max_avatar_bytes
            )

        if not changes:
            user = await self._store.get_user(actor_id)
            if user is None:
                raise UserNotFoundError(str(actor_id))
            return user
        return await self._store.update_profile(actor_id, changes)
