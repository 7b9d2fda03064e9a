"""
SnapDigest Backend — Blob Store Interface and File Implementation
===================================================================

What:  The storage seam under DurableCache: load one blob, save one blob.
Why:   The cache logic (dirty flag, periodic flush, startup load) should not
       care whether its snapshot lives in a local file, an object store, or a
       database row. Swapping backends is a constructor argument.
How:   BlobStore is an abstract base class with two async methods.
       FileBlobStore writes with aiofiles to a temp file and swaps it into
       place with os.replace, so a crash mid-write never leaves a torn file.
Who:   Constructed by CoreRuntime (one store per named cache) and by tests.

Contract:
    load() -> bytes | None   None means "nothing stored yet"
    save(data) -> None       Overwrites the whole blob atomically

    Implementations raise PersistenceError for I/O failures. DurableCache
    catches it; callers of get/set never see it.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

from snapdigest.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """
    Abstract single-blob storage used by DurableCache.

    Each instance owns exactly one blob. Only the owning cache writes to it,
    and the cache never runs two saves at once, so implementations need no
    locking of their own.
    """

    #: Human-readable identity used in log lines
    name: str = "blob"

    @abstractmethod
    async def load(self) -> Optional[bytes]:
        """Return the stored blob, or None when nothing has been saved yet."""
        ...

    @abstractmethod
    async def save(self, data: bytes) -> None:
        """Replace the stored blob with `data`."""
        ...


class FileBlobStore(BlobStore):
    """
    Stores the blob as a single file on the local filesystem.

    Write path:
        1. Write bytes to `<path>.tmp`
        2. os.replace(`<path>.tmp`, `<path>`)  (atomic on POSIX and Windows)

    A reader therefore sees either the previous snapshot or the new one,
    never half of each.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.name = self.path.name
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")

    async def load(self) -> Optional[bytes]:
        try:
            async with aiofiles.open(self.path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(
                message=f"Could not read cache file {self.name}",
                context={"path": str(self.path), "os_error": str(e)},
            ) from e

    async def save(self, data: bytes) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self._tmp_path, "wb") as f:
                await f.write(data)
                await f.flush()
            await aiofiles.os.replace(self._tmp_path, self.path)
        except OSError as e:
            # Leave no stray temp file behind; the previous snapshot is intact
            try:
                os.remove(self._tmp_path)
            except OSError:
                logger.debug("No temp file to remove for %s", self.name)
            raise PersistenceError(
                message=f"Could not write cache file {self.name}",
                context={"path": str(self.path), "os_error": str(e)},
            ) from e

    def __repr__(self) -> str:
        return f"<FileBlobStore(path='{self.path}')>"
