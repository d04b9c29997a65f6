# =============================================================================
# File: chatsync/chat/exceptions.py
# Description: Chat domain exceptions
# =============================================================================

from typing import Optional

from chatsync.common.exceptions.exceptions import (
    ChatSyncException,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)


class ChatNotFoundError(NotFoundError):
    """Chat not found (or no longer visible)"""
    def __init__(self, chat_id: str):
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


class MessageNotFoundError(NotFoundError):
    """Message not found (or no longer visible)"""
    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class MemberNotFoundError(NotFoundError):
    """Membership not found"""
    def __init__(self, chat_id: str, user_id: str):
        super().__init__(f"User {user_id} is not a member of chat {chat_id}")
        self.chat_id = chat_id
        self.user_id = user_id


class UserNotFoundError(NotFoundError):
    """User profile not found"""
    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class ActionDeniedError(PermissionDeniedError):
    """The Authority or the store denied an action"""
    def __init__(self, user_id: str, action: str, reason: Optional[str] = None):
        message = f"User {user_id} may not {action}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"action": action, "reason": reason})
        self.user_id = user_id
        self.action = action
        self.reason = reason


class PersonalChatInvariantError(ValidationFailedError):
    """Operation would break the personal chat invariants"""
    def __init__(self, operation: str):
        super().__init__(f"Personal chats do not support: {operation}")
        self.operation = operation


class MessageSendFailedError(ChatSyncException):
    """Upload succeeded but the message insert failed; resubmit to retry"""
    def __init__(self, chat_id: str, attachment_ref: Optional[str], cause: BaseException):
        super().__init__(
            f"Message send to chat {chat_id} failed: {cause}",
            details={"attachment_ref": attachment_ref},
        )
        self.chat_id = chat_id
        self.attachment_ref = attachment_ref
        self.cause = cause
