"""Directory-backed storage in a user-granted local folder.

Layout under the granted folder::

    memchat-data/
        conversations/<id>.json
        embeddings/<conversation id>.json
        summaries/<conversation id>.json
        folders/<id>.json
        media/<sha256>.<ext>

The grant is the folder path itself. It is remembered across restarts;
if the folder disappears or stops being readable/writable the backend
reports :class:`StorageAccessRevoked` rather than "not found", and
:meth:`reauthorize` re-checks the remembered folder without asking the
user to pick it again.
"""

import asyncio
import json
import logging
import os
from functools import partial
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from ..exceptions import StorageAccessRevoked, StorageError
from .base import MEDIA_NAMESPACE, RecordKind, StorageBackend

logger = logging.getLogger(__name__)

DATA_DIR_NAME = "memchat-data"


def _has_access(path: Path) -> bool:
    return path.is_dir() and os.access(path, os.R_OK | os.W_OK | os.X_OK)


class DirectoryBackend(StorageBackend):
    name = "directory"

    def __init__(self, directory: Optional[Path] = None):
        self._directory: Optional[Path] = Path(directory) if directory else None
        self._connected = False

    # ---- grant lifecycle ----

    @property
    def directory(self) -> Optional[Path]:
        return self._directory

    @property
    def directory_name(self) -> str:
        return self._directory.name if self._directory else ""

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def data_root(self) -> Path:
        if self._directory is None:
            raise StorageAccessRevoked("No storage directory has been granted")
        return self._directory / DATA_DIR_NAME

    def _prepare(self) -> None:
        root = self.data_root
        root.mkdir(exist_ok=True)
        for kind in RecordKind:
            (root / kind.value).mkdir(exist_ok=True)
        (root / MEDIA_NAMESPACE).mkdir(exist_ok=True)

    async def connect(self, directory: Path) -> None:
        """Grant access to *directory* and lay out the data tree in it."""
        directory = Path(directory).expanduser()
        if not _has_access(directory):
            raise StorageError(f"Cannot use {directory} for storage: not a writable directory")
        self._directory = directory
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._prepare)
        except OSError as e:
            self._connected = False
            raise StorageError(f"Cannot prepare storage in {directory}: {e}") from e
        self._connected = True
        logger.info("Directory storage connected at %s", directory)

    async def init(self) -> bool:
        """Restore the remembered grant; False if it needs re-authorization."""
        if self._directory is None:
            return False
        return await self.reauthorize()

    def needs_reauthorization(self) -> bool:
        if self._directory is None:
            return False
        return not (self._connected and _has_access(self._directory))

    async def reauthorize(self) -> bool:
        if self._directory is None:
            return False
        if not _has_access(self._directory):
            self._connected = False
            logger.warning("Storage directory %s is no longer accessible", self._directory)
            return False
        try:
            await self.connect(self._directory)
        except StorageError:
            return False
        return True

    def disconnect(self) -> None:
        self._directory = None
        self._connected = False

    # ---- helpers ----

    def _check_access(self) -> Path:
        if not self._connected or self._directory is None:
            raise StorageAccessRevoked("Directory storage is not connected")
        if not _has_access(self._directory):
            self._connected = False
            raise StorageAccessRevoked(
                f"Access to {self._directory} was revoked; re-authorize storage"
            )
        return self.data_root

    def _record_path(self, kind: RecordKind, record_id: str) -> Path:
        return self._check_access() / kind.value / f"{quote(record_id, safe='')}.json"

    def _blob_path(self, name: str) -> Path:
        return self._check_access() / MEDIA_NAMESPACE / quote(name, safe=".")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except PermissionError as e:
            self._connected = False
            raise StorageAccessRevoked(f"Storage access denied: {e}") from e
        except StorageError:
            raise
        except OSError as e:
            raise StorageError(f"Directory storage error: {e}") from e

    # ---- records ----

    def _get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        path = self._record_path(kind, record_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Corrupt %s record %s at %s", kind.value, record_id, path)
            return None

    def _set(self, kind: RecordKind, record_id: str, value: Any) -> None:
        path = self._record_path(kind, record_id)
        path.parent.mkdir(exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def _delete(self, kind: RecordKind, record_id: str) -> None:
        self._record_path(kind, record_id).unlink(missing_ok=True)

    def _list_ids(self, kind: RecordKind) -> list[str]:
        folder = self._check_access() / kind.value
        if not folder.is_dir():
            return []
        return sorted(unquote(p.stem) for p in folder.glob("*.json"))

    async def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        return await self._run(self._get, kind, record_id)

    async def set(self, kind: RecordKind, record_id: str, value: Any) -> None:
        await self._run(self._set, kind, record_id, value)

    async def delete(self, kind: RecordKind, record_id: str) -> None:
        await self._run(self._delete, kind, record_id)

    async def list_ids(self, kind: RecordKind) -> list[str]:
        return await self._run(self._list_ids, kind)

    # ---- blobs ----

    def _save_blob(self, name: str, data: bytes) -> None:
        path = self._blob_path(name)
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(data)

    def _load_blob(self, name: str) -> Optional[bytes]:
        path = self._blob_path(name)
        if not path.exists():
            return None
        return path.read_bytes()

    def _delete_blob(self, name: str) -> None:
        self._blob_path(name).unlink(missing_ok=True)

    def _list_blobs(self) -> list[str]:
        folder = self._check_access() / MEDIA_NAMESPACE
        if not folder.is_dir():
            return []
        return sorted(unquote(p.name) for p in folder.iterdir() if p.is_file())

    def _size(self) -> int:
        root = self._check_access()
        return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())

    async def save_blob(self, name: str, data: bytes) -> None:
        await self._run(self._save_blob, name, data)

    async def load_blob(self, name: str) -> Optional[bytes]:
        return await self._run(self._load_blob, name)

    async def delete_blob(self, name: str) -> None:
        await self._run(self._delete_blob, name)

    async def list_blobs(self) -> list[str]:
        return await self._run(self._list_blobs)

    async def size(self) -> int:
        return await self._run(self._size)
