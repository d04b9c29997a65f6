# =============================================================================
# File: chatsync/engine.py
# Description: ChatSyncEngine - wires the reconcilers, presence and commands
#              for the current user
# =============================================================================

"""
ChatSyncEngine

Produced surface for one signed-in user:

    engine = ChatSyncEngine(store, storage, auth, transport)
    await engine.start()

    engine.directory.visible.value            # chat list (reactive)
    engine.notifications.unread_count.value   # unread counter (reactive)
    engine.presence.state.value               # presence flag (reactive)

    stream = await engine.open_chat(chat_id)  # message log (reactive)
    await engine.send(SendMessageCommand(chat_id=chat_id, content="hi"))
    engine.close_chat(chat_id)

    await engine.stop()

Without a current user start() leaves the engine empty: nothing is
subscribed and nothing is readable. Commands are routed by type to
ChatCommandService; their effects come back through the change feed.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from chatsync.chat.commands import (
    AddMembersCommand,
    ChangeMemberRoleCommand,
    Command,
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
from chatsync.chat.enums import ChatAction
from chatsync.chat.exceptions import ChatNotFoundError, MessageNotFoundError
from chatsync.chat.permissions import MembershipAuthority
from chatsync.chat.ports.change_feed_transport_port import ChangeFeedTransportPort
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.chat.ports.object_storage_port import AuthPort, ObjectStoragePort
from chatsync.chat.service import ChatCommandService
from chatsync.common.exceptions.exceptions import (
    ChatSyncException,
    UnauthenticatedError,
    ValidationFailedError,
)
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.config.storage_config import StorageConfig
from chatsync.realtime.change_feed import ChangeFeedSubscriber
from chatsync.sync.directory import ChatDirectoryReconciler
from chatsync.sync.message_stream import MessageStreamHandler
from chatsync.sync.notifications import NotificationDispatcher
from chatsync.sync.presence import PresenceTracker
from chatsync.utils.uuid_utils import to_uuid

log = logging.getLogger("chatsync.engine")

# Commands after which the chat's open message stream is closed
_CHAT_ENDING_COMMANDS = (LeaveChatCommand, DeleteChatCommand)


class ChatSyncEngine:
    """Facade over the realtime components of one authenticated session"""

    def __init__(
        self,
        store: ChatStorePort,
        storage: ObjectStoragePort,
        auth: AuthPort,
        transport: ChangeFeedTransportPort,
        realtime_config: Optional[RealtimeConfig] = None,
        storage_config: Optional[StorageConfig] = None,
    ):
        self._store = store
        self._auth = auth
        self._config = realtime_config or get_realtime_config()
        self._subscriber = ChangeFeedSubscriber(transport, self._config)
        self._service = ChatCommandService(store, storage, auth, self._config, storage_config)

        self._user_id: Optional[uuid.UUID] = None
        self._streams: Dict[uuid.UUID, MessageStreamHandler] = {}

        self.directory: Optional[ChatDirectoryReconciler] = None
        self.notifications: Optional[NotificationDispatcher] = None
        self.presence: Optional[PresenceTracker] = None

        self._routes: Dict[Type[Command], Callable[[Any], Awaitable[Any]]] = {
            FindOrCreatePersonalChatCommand: self._service.find_or_create_personal_chat,
            CreateChatCommand: self._service.create_chat,
            UpdateChatSettingsCommand: self._service.update_chat_settings,
            ToggleChatFlagCommand: self._service.toggle_flag,
            DeleteChatCommand: self._service.delete_chat,
            CreateInviteCommand: self._service.create_invite,
            JoinChatCommand: self._service.join_chat,
            AddMembersCommand: self._service.add_members,
            RemoveMemberCommand: self._service.remove_member,
            LeaveChatCommand: self._service.leave_chat,
            ChangeMemberRoleCommand: self._service.change_member_role,
            SendMessageCommand: self._service.send_message,
            EditMessageCommand: self._service.edit_message,
            DeleteMessageCommand: self._service.delete_message,
            PinMessageCommand: self._service.pin_message,
            UpdateProfileCommand: self._service.update_profile,
        }
        self._command_counts: Dict[str, int] = {}
        self._command_errors: Dict[str, int] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def user_id(self) -> Optional[uuid.UUID]:
        return self._user_id

    @property
    def is_started(self) -> bool:
        return self._user_id is not None

    @property
    def subscriber(self) -> ChangeFeedSubscriber:
        return self._subscriber

    async def start(self, visible: bool = True) -> bool:
        """
        Load and subscribe the current user's directory and notification
        feed, then go online. Returns False (engine stays empty) when
        nobody is signed in.
        """
        if self._user_id is not None:
            return True

        user_id = self._auth.current_user_id()
        if user_id is None:
            log.info("No authenticated user, engine stays empty")
            return False

        self._user_id = user_id
        self.directory = ChatDirectoryReconciler(user_id, self._store, self._subscriber)
        self.notifications = NotificationDispatcher(user_id, self._store, self._subscriber, self._config)
        self.presence = PresenceTracker(user_id, self._store, self._config)

        try:
            await self.directory.start()
            await self.notifications.start()
            await self.presence.start(visible)
        except Exception:
            await self.stop()
            raise

        log.info(f"Engine started for user {user_id}")
        return True

    async def stop(self) -> None:
        for chat_id in list(self._streams):
            self.close_chat(chat_id)

        if self.directory is not None:
            self.directory.stop()
        if self.notifications is not None:
            self.notifications.stop()
        if self.presence is not None:
            try:
                await self.presence.stop()
            except ChatSyncException as e:
                log.warning(f"Could not write offline presence for {self._user_id}: {e}")
        self._subscriber.close()

        if self._user_id is not None:
            log.info(f"Engine stopped for user {self._user_id}")
        self._user_id = None
        self.directory = None
        self.notifications = None
        self.presence = None

    def _require_started(self) -> uuid.UUID:
        if self._user_id is None:
            raise UnauthenticatedError("Engine is not started for an authenticated user")
        return self._user_id

    # =========================================================================
    # Chat views
    # =========================================================================

    async def open_chat(self, chat_id: uuid.UUID) -> MessageStreamHandler:
        """Open (or return the already open) message stream of a chat."""
        user_id = self._require_started()
        stream = self._streams.get(chat_id)
        if stream is not None:
            return stream

        membership = await self._store.get_membership(chat_id, user_id)
        if membership is None and await self._store.get_chat(chat_id) is None:
            self._forget_chat(chat_id)
            raise ChatNotFoundError(str(chat_id))
        MembershipAuthority.require(ChatAction.READ_CHAT, membership, actor_id=user_id)

        stream = MessageStreamHandler(chat_id, self._store, self._subscriber)
        self._streams[chat_id] = stream
        try:
            await stream.open()
        except Exception:
            self._streams.pop(chat_id, None)
            stream.close()
            raise
        return stream

    def close_chat(self, chat_id: uuid.UUID) -> None:
        """Unsubscribe synchronously; no message is applied after this returns."""
        stream = self._streams.pop(chat_id, None)
        if stream is not None:
            stream.close()

    def get_stream(self, chat_id: uuid.UUID) -> Optional[MessageStreamHandler]:
        return self._streams.get(chat_id)

    def _forget_chat(self, chat_id: uuid.UUID) -> None:
        self.close_chat(chat_id)
        if self.directory is not None:
            self.directory.forget(chat_id)

    def _forget_message(self, message_id: uuid.UUID) -> None:
        for stream in self._streams.values():
            stream.forget(message_id)

    # =========================================================================
    # Commands
    # =========================================================================

    async def send(self, command: Command) -> Any:
        """
        Dispatch a command to its handler.

        Raises:
            ValidationFailedError: unknown command type or malformed payload
            PermissionDeniedError: denied by the Authority or the store
            NotFoundError: target no longer exists (stale local entry is dropped)
        """
        command_name = type(command).__name__
        handler = self._routes.get(type(command))
        if handler is None:
            raise ValidationFailedError(f"No handler registered for {command_name}")

        self._command_counts[command_name] = self._command_counts.get(command_name, 0) + 1
        log.debug(f"Processing command {command_name}")
        try:
            result = await handler(command)
        except ChatNotFoundError as e:
            self._command_errors[command_name] = self._command_errors.get(command_name, 0) + 1
            log.info(f"{command_name} targeted a chat that is gone: {e}")
            self._forget_chat(to_uuid(e.chat_id))
            raise
        except MessageNotFoundError as e:
            self._command_errors[command_name] = self._command_errors.get(command_name, 0) + 1
            log.info(f"{command_name} targeted a message that is gone: {e}")
            self._forget_message(to_uuid(e.message_id))
            raise
        except ChatSyncException as e:
            self._command_errors[command_name] = self._command_errors.get(command_name, 0) + 1
            log.warning(f"Failed to process command {command_name}: {e}")
            raise

        if isinstance(command, _CHAT_ENDING_COMMANDS):
            self.close_chat(command.chat_id)
        return result

    async def mark_notification_read(self, notification_id: uuid.UUID) -> None:
        self._require_started()
        await self.notifications.mark_read(notification_id)

    async def mark_all_notifications_read(self) -> None:
        self._require_started()
        await self.notifications.mark_all_read()

    # =========================================================================
    # Presence
    # =========================================================================

    async def set_visibility(self, visible: bool) -> None:
        self._require_started()
        await self.presence.on_visibility_change(visible)

    async def page_unload(self) -> None:
        if self.presence is not None:
            await self.presence.on_page_unload()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "command_counts": self._command_counts.copy(),
            "command_errors": self._command_errors.copy(),
            "active_subscriptions": self._subscriber.active_subscriptions,
            "open_chats": len(self._streams),
        }
