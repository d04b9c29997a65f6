# =============================================================================
# File: chatsync/utils/uuid_utils.py  - ID and token utilities
# =============================================================================

import secrets
import uuid
from typing import Union
from uuid import UUID


def generate_uuid() -> UUID:
    """
    Generate a new entity id (UUIDv4).

    Ordering never relies on ids being time-sortable: messages sort by
    (created_at, id) and chats by (is_pinned, updated_at, id).
    """
    return uuid.uuid4()


def generate_uuid_str() -> str:
    return str(uuid.uuid4())


def generate_invite_token(nbytes: int = 12) -> str:
    """URL-safe invite token for group/channel invite links."""
    return secrets.token_urlsafe(nbytes)


def to_uuid(value: Union[str, UUID]) -> UUID:
    """Coerce a str or UUID to UUID (raises ValueError on garbage)."""
    if isinstance(value, UUID):
        return value
    return UUID(str(value))
