# =============================================================================
# File: chatsync/config/storage_config.py
# Description: Object storage configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from chatsync.common.base.base_config import BaseConfig


class StorageConfig(BaseConfig):
    """
    Storage configuration for the local object storage adapter.
    """

    model_config = SettingsConfigDict(
        **{**BaseConfig.model_config, 'env_prefix': 'STORAGE_'},
    )

    base_path: str = Field(default="storage", description="Root directory for stored objects")
    public_url: str = Field(default="/static/storage", description="Public URL prefix")

    avatars_bucket: str = Field(default="avatars")
    chat_files_bucket: str = Field(default="chat-files")
    wallpapers_bucket: str = Field(default="chat-wallpapers")

    max_avatar_bytes: int = Field(default=5 * 1024 * 1024, description="Profile and chat avatar size limit")
    max_wallpaper_bytes: int = Field(default=20 * 1024 * 1024, description="Chat wallpaper size limit")
    max_file_bytes: int = Field(default=100 * 1024 * 1024, description="Attachment size limit")


@lru_cache(maxsize=1)
def get_storage_config() -> StorageConfig:
    """Get storage configuration singleton (cached)."""
    return StorageConfig()


def reset_storage_config() -> None:
    """Reset config singleton (for testing)."""
    get_storage_config.cache_clear()
