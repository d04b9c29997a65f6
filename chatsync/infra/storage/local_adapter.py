# =============================================================================
# File: chatsync/infra/storage/local_adapter.py
# Description: Local file storage adapter (for development)
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from chatsync.common.base.base_storage_provider import BaseStorageProvider
from chatsync.common.exceptions.exceptions import InfrastructureError, NotFoundError, ValidationFailedError
from chatsync.config.storage_config import StorageConfig, get_storage_config

log = logging.getLogger("chatsync.infra.storage")


class LocalStorageAdapter(BaseStorageProvider):
    """
    Local file storage adapter.

    Objects live under base_path/<path> and are served under
    public_url/<path> by whatever static file server fronts the directory.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        config = config or get_storage_config()
        self.base_path = Path(config.base_path)
        self.base_url = config.public_url.rstrip("/")
        self._ensure_directories(config)

    def _ensure_directories(self, config: StorageConfig) -> None:
        for bucket in (config.avatars_bucket, config.chat_files_bucket, config.wallpapers_bucket):
            (self.base_path / bucket).mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = Path(path.lstrip("/"))
        if ".." in relative.parts:
            raise ValidationFailedError(f"Invalid object path: {path}", field="path")
        return self.base_path / relative

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        file_path = self._resolve(path)
        try:
            await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
            async with aiofiles.open(file_path, "wb") as f:
                await f.write(data)
        except OSError as e:
            log.error(f"Failed to upload {path}: {e}", exc_info=True)
            raise InfrastructureError(f"Upload of {path} failed: {e}") from e

        public_url = f"{self.base_url}/{file_path.relative_to(self.base_path).as_posix()}"
        log.info(f"File uploaded: {file_path} -> {public_url} ({content_type or 'unknown type'})")
        return public_url

    async def delete(self, ref: str) -> None:
        if not ref.startswith(self.base_url + "/"):
            raise NotFoundError(f"Not a local storage reference: {ref}")

        file_path = self._resolve(ref[len(self.base_url):])
        if not await aiofiles.os.path.exists(file_path):
            raise NotFoundError(f"Stored object not found: {ref}")
        try:
            await aiofiles.os.remove(file_path)
        except OSError as e:
            raise InfrastructureError(f"Delete of {ref} failed: {e}") from e
        log.info(f"File deleted: {file_path}")

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(self._resolve(path))
