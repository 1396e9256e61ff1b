"""Persistent keyed blob storage for generated videos and thumbnails.

Payloads live one file per id under ``<root>/blobs/``; ``<root>/index.json``
records each id's file name, size and creation time. Disk I/O runs in a
worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from pathlib import Path

from storyboard_video.errors import StorageError
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import BlobEntry, EphemeralReference

logger = logging.getLogger(__name__)

_INDEX_FILE = "index.json"
_BLOBS_DIR = "blobs"


def video_key(shot_index: int) -> str:
    return f"video_{shot_index}"


def thumbnail_key(shot_index: int) -> str:
    return f"thumbnail_{shot_index}"


def _blob_filename(blob_id: str) -> str:
    # Ids are caller-chosen strings; hash them so any id maps to a safe filename.
    return hashlib.sha256(blob_id.encode("utf-8")).hexdigest() + ".bin"


class BlobStore:
    """Async key -> bytes map persisted under a local directory.

    Usage::

        store = BlobStore(".storyboard/store")
        await store.put("video_0", data)
        data = await store.get("video_0")  # None when missing
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._index_path = self.root / _INDEX_FILE
        self._blobs_dir = self.root / _BLOBS_DIR
        self._index_lock = asyncio.Lock()
        self._commit_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Internal helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _load_index(self) -> dict:
        if not self._index_path.exists():
            return {}
        try:
            with open(self._index_path, "r", encoding="utf-8") as f:
                index = json.load(f)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Blob index is corrupt: {self._index_path}") from exc
        if not isinstance(index, dict):
            raise StorageError(f"Blob index is corrupt: {self._index_path}")
        return index

    def _save_index(self, index: dict) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self._index_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(index, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self._index_path)

    def _put_sync(self, blob_id: str, data: bytes) -> None:
        self._blobs_dir.mkdir(parents=True, exist_ok=True)
        filename = _blob_filename(blob_id)
        tmp_path = self._blobs_dir / f"{filename}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, self._blobs_dir / filename)

        index = self._load_index()
        index[blob_id] = {
            "file": filename,
            "size": len(data),
            "created_at": time.time(),
        }
        self._save_index(index)

    def _get_sync(self, blob_id: str) -> BlobEntry | None:
        record = self._load_index().get(blob_id)
        if record is None:
            return None
        path = self._blobs_dir / record["file"]
        if not path.exists():
            logger.warning("Blob %s is indexed but its file is missing", blob_id)
            return None
        return BlobEntry(
            id=blob_id,
            data=path.read_bytes(),
            created_at=float(record.get("created_at", 0.0)),
        )

    def _delete_sync(self, blob_id: str) -> None:
        index = self._load_index()
        record = index.pop(blob_id, None)
        if record is None:
            return
        (self._blobs_dir / record["file"]).unlink(missing_ok=True)
        self._save_index(index)

    def _clear_sync(self) -> None:
        index = self._load_index()
        for record in index.values():
            (self._blobs_dir / record["file"]).unlink(missing_ok=True)
        self._save_index({})

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except OSError as exc:
            raise StorageError(f"Blob storage failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def commit_lock(self, blob_id: str) -> asyncio.Lock:
        """Return the lock serialising commits to ``blob_id``."""
        lock = self._commit_locks.get(blob_id)
        if lock is None:
            lock = self._commit_locks[blob_id] = asyncio.Lock()
        return lock

    async def put(self, blob_id: str, data: bytes) -> None:
        """Insert or overwrite the payload stored under ``blob_id``."""
        async with self._index_lock:
            await self._run(self._put_sync, blob_id, bytes(data))
        logger.debug("Stored blob %s (%.1f KB)", blob_id, len(data) / 1024)

    async def get_entry(self, blob_id: str) -> BlobEntry | None:
        async with self._index_lock:
            return await self._run(self._get_sync, blob_id)

    async def get(self, blob_id: str) -> bytes | None:
        """Return the payload for ``blob_id``, or ``None`` if absent."""
        entry = await self.get_entry(blob_id)
        return entry.data if entry else None

    async def delete(self, blob_id: str) -> None:
        """Remove ``blob_id``. Deleting a missing id is not an error."""
        async with self._index_lock:
            await self._run(self._delete_sync, blob_id)

    async def clear(self) -> None:
        """Remove every entry."""
        async with self._index_lock:
            await self._run(self._clear_sync)
        logger.info("Cleared blob store at %s", self.root)

    async def keys(self) -> list[str]:
        async with self._index_lock:
            index = await self._run(self._load_index)
        return sorted(index)

    async def resolve_ephemeral(
        self,
        blob_id: str,
        registry: HandleRegistry,
        mime_type: str = "video/mp4",
    ) -> EphemeralReference | None:
        """Wrap a stored payload in a session handle.

        The caller owns the handle and must release it through ``registry``
        once it is no longer displayed.
        """
        data = await self.get(blob_id)
        if data is None:
            return None
        return registry.create(data, mime_type)
