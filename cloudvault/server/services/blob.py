import asyncio
import hashlib
import logging
import re
import secrets
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[0-9a-f]{32}(\.[0-9a-z]{1,16})?$")


@dataclass
class BlobInfo:
    """Result of writing a blob."""

    key: str
    size: int
    md5: str


@dataclass
class StoredBlob:
    key: str
    mtime: float


class BlobStorage(ABC):
    """Interface for physical blob storage.

    Every write gets a fresh key, so deleting a blob never affects another
    file's content.
    """

    @abstractmethod
    async def write_stream(
        self, stream: AsyncIterator[bytes], extension: str = ""
    ) -> BlobInfo:
        """Write a stream to storage under a new key."""

    @abstractmethod
    def get_blob_path(self, key: str) -> Path:
        """Get physical path to the blob, used to serve downloads."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if blob exists."""

    @abstractmethod
    async def get_size(self, key: str) -> int:
        """Size of a stored blob in bytes."""

    @abstractmethod
    async def delete_blob(self, key: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""

    @abstractmethod
    async def list_blobs(self) -> list[StoredBlob]:
        """List every stored blob."""


class LocalBlobStorage(BlobStorage):
    """Local filesystem implementation of blob storage.

    Path structure: <root>/blobs/<key[0:2]>/<key>
    Example: storage/blobs/3f/3f9c0d...e1.pdf
    """

    def __init__(self, storage_root: Path) -> None:
        """Create a local blob storage instance."""
        self.root = storage_root / "blobs"
        self.temp_dir = storage_root / "temp"
        self.root.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root / key[:2] / key

    @staticmethod
    def _new_key(extension: str) -> str:
        key = secrets.token_hex(16)
        ext = extension.lower().lstrip(".")
        if ext and re.fullmatch(r"[0-9a-z]{1,16}", ext):
            return f"{key}.{ext}"
        return key

    async def write_stream(
        self, stream: AsyncIterator[bytes], extension: str = ""
    ) -> BlobInfo:
        """Write stream to storage and return its key, size and MD5 hash."""
        key = self._new_key(extension)
        md5_hasher = hashlib.md5()
        size = 0

        # Write to a temp file and rename so readers never see partial content
        temp_path = self.temp_dir / f"upload_{secrets.token_hex(8)}.tmp"
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                async for chunk in stream:
                    md5_hasher.update(chunk)
                    size += len(chunk)
                    await f.write(chunk)

            final_path = self._get_path(key)
            final_path.parent.mkdir(parents=True, exist_ok=True)
            await aiofiles.os.rename(temp_path, final_path)
        except BaseException:
            await asyncio.to_thread(temp_path.unlink, missing_ok=True)
            raise

        return BlobInfo(key=key, size=size, md5=md5_hasher.hexdigest())

    def get_blob_path(self, key: str) -> Path:
        """Get physical path to the blob."""
        return self._get_path(key)

    async def exists(self, key: str) -> bool:
        """Check if blob exists."""
        return await aiofiles.os.path.exists(self._get_path(key))

    async def get_size(self, key: str) -> int:
        return (await aiofiles.os.stat(self._get_path(key))).st_size

    async def delete_blob(self, key: str) -> bool:
        path = self._get_path(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted blob {key}")
        return True

    async def list_blobs(self) -> list[StoredBlob]:
        def _scan() -> list[StoredBlob]:
            return [
                StoredBlob(key=p.name, mtime=p.stat().st_mtime)
                for p in self.root.glob("*/*")
                if p.is_file()
            ]

        return await asyncio.to_thread(_scan)
