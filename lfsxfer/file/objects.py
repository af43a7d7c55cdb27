"""
Local Object Store

Design Decision: Storage Layout
===============================

Options Considered:
1. Single directory with oid-named files
   - Simple, but huge directories for big repos
2. Two-level fan-out (first 2 + next 2 chars of the oid)
   - Same layout git-lfs uses, so existing stores just work
3. SQLite blob storage
   - Objects are large files; blobs are the wrong fit

Decision: Two-level fan-out
- objects/ab/cd/abcdef...   (oid = SHA-256 of content, hex)
- tmp/ for partial files; everything lands by atomic rename

Storage Layout:
```
data/
├── objects/
│   └── ab/
│       └── cd/
│           └── abcdef123...
└── tmp/
```
"""

import re
import hashlib
import logging
from pathlib import Path
from typing import Tuple

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

OID_PATTERN = re.compile(r'^[0-9a-f]{64}$')
HASH_BLOCK_SIZE = 256 * 1024


class ObjectStoreError(Exception):
    """An object could not be stored (missing, wrong size, wrong hash)."""


async def hash_file(path: Path) -> Tuple[str, int]:
    """
    SHA-256 a file without loading it into memory.

    Returns:
        (hex digest, size in bytes)
    """
    hasher = hashlib.sha256()
    size = 0
    async with aiofiles.open(path, 'rb') as f:
        while True:
            data = await f.read(HASH_BLOCK_SIZE)
            if not data:
                break
            hasher.update(data)
            size += len(data)
    return hasher.hexdigest(), size


async def copy_file(source: Path, dest: Path) -> None:
    """Copy a file block by block without blocking the event loop."""
    async with aiofiles.open(source, 'rb') as src, aiofiles.open(dest, 'wb') as dst:
        while True:
            data = await src.read(HASH_BLOCK_SIZE)
            if not data:
                break
            await dst.write(data)


class LocalObjectStore:
    """
    Content-addressed local storage for transferred objects.

    Provides:
    - oid -> path resolution (what upload agents read from)
    - Ingest of agent-downloaded files, verified against their oid
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.objects_dir = self.data_dir / "objects"
        self.temp_dir = self.data_dir / "tmp"

        self._ensure_directories()

    def _ensure_directories(self):
        for dir_path in [self.objects_dir, self.temp_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def object_path(self, oid: str) -> Path:
        """
        Get filesystem path for an object.

        Raises:
            ValueError: if oid is not a SHA-256 hex digest
        """
        if not OID_PATTERN.match(oid):
            raise ValueError(f"Invalid object id: {oid!r}")
        return self.objects_dir / oid[0:2] / oid[2:4] / oid

    def has_object(self, oid: str) -> bool:
        try:
            return self.object_path(oid).is_file()
        except ValueError:
            return False

    # === Ingest ===

    async def store_file(self, file_path: Path) -> Tuple[str, int]:
        """
        Copy a working-tree file into the store.

        Returns:
            (oid, size) of the stored object
        """
        file_path = Path(file_path)
        oid, size = await hash_file(file_path)

        dest = self.object_path(oid)
        if dest.is_file():
            return oid, size

        await aiofiles.os.makedirs(dest.parent, exist_ok=True)
        temp_path = self.temp_dir / f"{oid}.tmp"
        # Write atomically (copy to temp, then rename)
        await copy_file(file_path, temp_path)
        await aiofiles.os.rename(temp_path, dest)

        logger.debug(f"Stored object {oid[:16]}... ({size:,} bytes)")
        return oid, size

    async def store_downloaded(self, oid: str, size: int, downloaded: Path) -> Path:
        """
        Move a file an agent downloaded into its place in the store.

        The file must match the expected size and hash; a bad file is
        deleted rather than left lying around.

        Raises:
            ObjectStoreError: missing file, size or hash mismatch
        """
        dest = self.object_path(oid)
        downloaded = Path(downloaded)

        if not downloaded.is_file():
            raise ObjectStoreError(f"Downloaded file for {oid[:16]}... not found: {downloaded}")

        actual_oid, actual_size = await hash_file(downloaded)
        if actual_size != size or actual_oid != oid:
            await aiofiles.os.remove(downloaded)
            raise ObjectStoreError(
                f"Downloaded object {oid[:16]}... is corrupt: expected {size:,} bytes "
                f"sha256 {oid[:16]}..., got {actual_size:,} bytes sha256 {actual_oid[:16]}..."
            )

        await aiofiles.os.makedirs(dest.parent, exist_ok=True)
        try:
            await aiofiles.os.rename(downloaded, dest)
        except OSError:
            # Different filesystem (agent wrote to its own temp dir)
            temp_path = self.temp_dir / f"{oid}.tmp"
            await copy_file(downloaded, temp_path)
            await aiofiles.os.rename(temp_path, dest)
            await aiofiles.os.remove(downloaded)

        logger.debug(f"Stored downloaded object {oid[:16]}... at {dest}")
        return dest
