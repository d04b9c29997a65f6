# =============================================================================
# File: chatsync/common/base/base_storage_provider.py
# Description: Abstract base class for object storage providers
# =============================================================================

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class BaseStorageProvider(ABC):
    """
    Abstract base class for object storage providers.

    Used for avatars, chat attachments and wallpapers. Failures are surfaced
    to the caller, never retried internally.

    Implementations:
        - LocalStorageAdapter (aiofiles, development)
    """

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Store bytes under a logical path.

        Args:
            path: Logical object path, e.g. "chat-files/<chat_id>/photo.png"
            data: Object content
            content_type: MIME type (optional)

        Returns:
            Durable public reference (URL) of the stored object
        """

    @abstractmethod
    async def delete(self, ref: str) -> None:
        """
        Delete an object by the reference returned from upload().

        Raises:
            NotFoundError: The reference does not point to a stored object
        """

    @staticmethod
    def guess_extension(content_type: Optional[str], original_filename: Optional[str] = None) -> str:
        """Get file extension from filename or content type"""
        if original_filename:
            ext = Path(original_filename).suffix
            if ext:
                return ext

        content_type_map = {
            "image/webp": ".webp",
            "image/png": ".png",
            "image/jpeg": ".jpg",
            "image/gif": ".gif",
            "application/pdf": ".pdf",
            "text/plain": ".txt",
            # Audio formats (for voice messages)
            "audio/webm": ".webm",
            "audio/ogg": ".ogg",
            "audio/mpeg": ".mp3",
            "audio/wav": ".wav",
            # Video formats
            "video/mp4": ".mp4",
            "video/webm": ".webm",
            "application/zip": ".zip",
        }
        return content_type_map.get(content_type or "", "")
