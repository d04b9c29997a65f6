# chatsync/common/exceptions/exceptions.py
# =============================================================================
# Custom exceptions for chatsync
# =============================================================================
#
# Propagation policy:
#   TransportInterruptedError, ConflictDuplicateError -> recovered internally
#   PermissionDeniedError, ValidationFailedError, NotFoundError -> surfaced
# =============================================================================

from typing import Any, Dict, Optional


class ChatSyncException(Exception):
    """Base exception for chatsync"""

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


class PermissionDeniedError(ChatSyncException):
    """Raised when the Authority or the store rejects a command"""
    pass


class UnauthenticatedError(PermissionDeniedError):
    """Raised when no current user is available from the auth collaborator"""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ValidationFailedError(ChatSyncException):
    """Raised before dispatch when a command is malformed"""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class NotFoundError(ChatSyncException):
    """Raised when a chat/message/member is no longer visible"""
    pass


class ConflictDuplicateError(ChatSyncException):
    """Raised when a concurrent insert loses a uniqueness race"""
    pass


class TransportInterruptedError(ChatSyncException):
    """Raised by change-feed transports when the stream drops"""
    pass


class MalformedChangeError(ChatSyncException):
    """Raised at the subscription boundary for payloads that fail validation"""
    pass


class InfrastructureError(ChatSyncException):
    """Raised for infrastructure errors"""
    pass
