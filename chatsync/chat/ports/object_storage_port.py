# =============================================================================
# File: chatsync/chat/ports/object_storage_port.py
# Description: Port interfaces for object storage and authentication
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

import uuid
from typing import Protocol, Optional, runtime_checkable


@runtime_checkable
class ObjectStoragePort(Protocol):
    """
    Port: Object Storage

    Implemented by: LocalStorageAdapter (chatsync/infra/storage/local_adapter.py)
    """

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store bytes and return a durable public reference."""
        ...

    async def delete(self, ref: str) -> None:
        ...


@runtime_checkable
class AuthPort(Protocol):
    """
    Port: Authentication

    Credential issuance and session validation live outside the engine;
    it only needs the current user id. None means unauthenticated.
    """

    def current_user_id(self) -> Optional[uuid.UUID]:
        ...
