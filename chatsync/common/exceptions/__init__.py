from chatsync.common.exceptions.exceptions import (
    ChatSyncException,
    PermissionDeniedError,
    UnauthenticatedError,
    ValidationFailedError,
    NotFoundError,
    ConflictDuplicateError,
    TransportInterruptedError,
    MalformedChangeError,
    InfrastructureError,
)

__all__ = [
    "ChatSyncException",
    "PermissionDeniedError",
    "UnauthenticatedError",
    "ValidationFailedError",
    "NotFoundError",
    "ConflictDuplicateError",
    "TransportInterruptedError",
    "MalformedChangeError",
    "InfrastructureError",
]
