from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class BlobStorage(Protocol):
    # Allow custom storage backends (local/object storage) for tenant snapshots.
    async def put(self, key: str, data: bytes) -> str:
        ...

    async def get(self, storage_locator: str) -> bytes:
        ...

    async def delete(self, storage_locator: str) -> None:
        ...


@dataclass(frozen=True)
class LocalBlobStorage:
    # Default local filesystem storage adapter for snapshot blobs.
    base_dir: Path

    def _path(self, storage_locator: str) -> Path:
        path = (self.base_dir / storage_locator).resolve()
        # Keys are relative paths; refuse anything that escapes the base directory.
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"storage locator escapes backup dir: {storage_locator!r}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        await asyncio.to_thread(self._write, self._path(key), data)
        return key

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def get(self, storage_locator: str) -> bytes:
        return await asyncio.to_thread(self._path(storage_locator).read_bytes)

    async def delete(self, storage_locator: str) -> None:
        await asyncio.to_thread(self._path(storage_locator).unlink, True)
