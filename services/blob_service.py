"""
Blob Service - uploaded contract files on local (or mounted) storage
"""
import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import List, Optional

import aiofiles

from config.settings import MEDIA_DIR
from utils.security_utils import sanitize_filename

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    pass


def contract_blob_path(user_id: str, contract_id: str, filename: str, timestamp_ms: Optional[int] = None) -> str:
    """Relative path for a contract upload: contracts/{user}/{contract}/{ms}-{filename}."""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"contracts/{user_id}/{contract_id}/{timestamp_ms}-{sanitize_filename(filename)}"


class BlobStore:
    """
    Key/value file storage rooted at a directory.
    Keys are relative POSIX paths and may not escape the root.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or MEDIA_DIR).resolve()

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/") or "\x00" in key:
            raise BlobStoreError(f"Invalid blob key: {key!r}")
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise BlobStoreError(f"Blob key escapes storage root: {key!r}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        path = self._resolve(key)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.info(f"Stored blob {key} ({len(data)} bytes)")
        return key

    async def get(self, key: str) -> bytes:
        path = self._resolve(key)
        if not await asyncio.to_thread(path.is_file):
            raise FileNotFoundError(key)
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._resolve(key).is_file)

    async def delete(self, key: str) -> bool:
        """Delete a blob; returns False if it was already gone."""
        path = self._resolve(key)
        if not await asyncio.to_thread(path.exists):
            return False
        if path.is_dir():
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await asyncio.to_thread(path.unlink)
        logger.info(f"Deleted blob {key}")
        return True

    async def list(self, prefix: str = "") -> List[str]:
        """Keys under a prefix, sorted."""
        base = self._resolve(prefix) if prefix else self.root

        def _walk() -> List[str]:
            if not base.exists():
                return []
            return sorted(p.relative_to(self.root).as_posix() for p in base.rglob("*") if p.is_file())

        return await asyncio.to_thread(_walk)
