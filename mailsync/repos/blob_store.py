import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Protocol

from mailsync.exceptions import PersistenceFailureError

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class BlobStore(Protocol):
    """Opaque key-value document store. Reads and writes always cover a whole document."""

    async def read_blob(self, key: str) -> bytes | None: ...

    async def write_blob(self, key: str, data: bytes) -> None: ...

    async def delete_blob(self, key: str) -> None: ...


class InMemoryBlobStore:
    """Blob store kept in process memory; used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def read_blob(self, key: str) -> bytes | None:
        return self._blobs.get(key)

    async def write_blob(self, key: str, data: bytes) -> None:
        self._blobs[key] = bytes(data)

    async def delete_blob(self, key: str) -> None:
        self._blobs.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._blobs)


class FileBlobStore:
    """Blob store writing one file per key under a root directory.

    Writes go to a temporary sibling first and are moved into place with ``os.replace`` so a
    reader never observes a half-written document.
    """

    def __init__(self, root: str | Path) -> None:
        self._logger = logging.getLogger(__name__)
        self._root = Path(root)

    def _path_for(self, key: str) -> Path:
        parts = [_UNSAFE_KEY_CHARS.sub("_", part) for part in key.split("/") if part]
        if not parts:
            raise PersistenceFailureError(f"Invalid blob key {key!r}", key=key)
        return self._root.joinpath(*parts)

    async def read_blob(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceFailureError(f"Failed to read blob {key}: {e}", key=key) from e

    async def write_blob(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write_atomic, path, data)
        except OSError as e:
            raise PersistenceFailureError(f"Failed to write blob {key}: {e}", key=key) from e
        self._logger.debug(f"Wrote blob {key} ({len(data)} bytes)")

    async def delete_blob(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise PersistenceFailureError(f"Failed to delete blob {key}: {e}", key=key) from e

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
