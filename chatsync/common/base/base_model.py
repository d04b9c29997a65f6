# =============================================================================
# File: chatsync/common/base/base_model.py
# Description: Base Pydantic model for all entity snapshots carried by the
#              change feed and returned by the backing store
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseEntity(BaseModel):
    """
    Base model for row snapshots (Chat, Membership, Message, ...).

    Snapshots are immutable values: reconcilers replace them, never mutate
    them in place. Unknown columns are dropped so store-side schema additions
    never leak undefined fields into the engine; missing required columns fail
    validation.
    """

    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict_for_bus(self) -> Dict[str, Any]:
        """Serialize to a JSON-ready dict (UUID/datetime as strings)."""
        return self.model_dump(mode="json")
