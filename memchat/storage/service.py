"""Process-wide storage service.

Owns the active :class:`StorageBackend` and the switch/disconnect flows.
Switching substrates copies every record and blob from the old backend
into the new one before the new one becomes active; callers only ever
talk to the service and never branch on which backend is in use.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from ..config import get_config, get_config_dir, update_config
from ..exceptions import StorageAccessRevoked, StorageError
from .base import RecordKind, StorageBackend
from .directory_backend import DirectoryBackend
from .kv_backend import KeyValueBackend

logger = logging.getLogger(__name__)


class StorageStatus(BaseModel):
    type: str
    connected: bool
    needs_reauthorization: bool = False
    directory_name: str = ""
    size_bytes: int = 0


class MigrationReport(BaseModel):
    records: int = 0
    blobs: int = 0
    failed: int = 0


async def migrate(source: StorageBackend, target: StorageBackend) -> MigrationReport:
    """Copy all records and blobs from *source* into *target*.

    Individual failures are logged and counted; a revoked source aborts.
    """
    report = MigrationReport()
    for kind in RecordKind:
        for record_id in await source.list_ids(kind):
            try:
                value = await source.get(kind, record_id)
                if value is None:
                    continue
                await target.set(kind, record_id, value)
                report.records += 1
            except StorageAccessRevoked:
                raise
            except StorageError as e:
                report.failed += 1
                logger.warning("Failed to migrate %s/%s: %s", kind.value, record_id, e)
    for name in await source.list_blobs():
        try:
            data = await source.load_blob(name)
            if data is None:
                continue
            await target.save_blob(name, data)
            report.blobs += 1
        except StorageAccessRevoked:
            raise
        except StorageError as e:
            report.failed += 1
            logger.warning("Failed to migrate media %s: %s", name, e)
    logger.info(
        "Migrated %d records and %d media files (%d failed) from %s to %s",
        report.records, report.blobs, report.failed, source.name, target.name,
    )
    return report


class StorageService:
    def __init__(self, kv: Optional[KeyValueBackend] = None,
                 directory: Optional[DirectoryBackend] = None):
        cfg = get_config().storage
        self.kv = kv or KeyValueBackend(get_config_dir() / "store.db")
        self.directory = directory or DirectoryBackend(
            Path(cfg.directory_path) if cfg.directory_path else None
        )
        self._active: StorageBackend = self.directory if cfg.type == "directory" else self.kv

    @property
    def backend(self) -> StorageBackend:
        return self._active

    @property
    def active_type(self) -> str:
        return self._active.name

    async def init(self) -> bool:
        await self.kv.init()
        if self._active is self.directory:
            ok = await self.directory.init()
            if not ok:
                logger.warning("Directory storage needs re-authorization")
            return ok
        return True

    def needs_reauthorization(self) -> bool:
        return self._active is self.directory and self.directory.needs_reauthorization()

    async def reauthorize(self) -> bool:
        return await self.directory.reauthorize()

    async def _persist_selection(self, type_: str, directory_path: str) -> None:
        cfg = get_config().model_copy(deep=True)
        cfg.storage.type = type_
        cfg.storage.directory_path = directory_path
        update_config(cfg)

    async def switch_to_directory(self, path: Path) -> MigrationReport:
        """Grant *path* and move existing data into it."""
        await self.directory.connect(Path(path))
        report = MigrationReport()
        if self._active is not self.directory:
            report = await migrate(self._active, self.directory)
        self._active = self.directory
        await self._persist_selection("directory", str(self.directory.directory))
        return report

    async def switch_to_kv(self) -> MigrationReport:
        report = MigrationReport()
        if self._active is self.directory and not self.directory.needs_reauthorization():
            report = await migrate(self.directory, self.kv)
        self._active = self.kv
        await self._persist_selection("kv", str(self.directory.directory or ""))
        return report

    async def disconnect(self) -> MigrationReport:
        """Go back to the key-value store and forget the directory grant."""
        report = await self.switch_to_kv()
        self.directory.disconnect()
        await self._persist_selection("kv", "")
        return report

    async def status(self) -> StorageStatus:
        needs_reauth = self.needs_reauthorization()
        size = 0
        if not needs_reauth:
            try:
                size = await self._active.size()
            except StorageError as e:
                logger.debug("Could not compute storage size: %s", e)
        return StorageStatus(
            type=self.active_type,
            connected=not needs_reauth,
            needs_reauthorization=needs_reauth,
            directory_name=self.directory.directory_name,
            size_bytes=size,
        )

    # ---- pass-through ----

    async def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        return await self._active.get(kind, record_id)

    async def set(self, kind: RecordKind, record_id: str, value: Any) -> None:
        await self._active.set(kind, record_id, value)

    async def delete(self, kind: RecordKind, record_id: str) -> None:
        await self._active.delete(kind, record_id)

    async def list_ids(self, kind: RecordKind) -> list[str]:
        return await self._active.list_ids(kind)

    async def save_blob(self, name: str, data: bytes) -> None:
        await self._active.save_blob(name, data)

    async def load_blob(self, name: str) -> Optional[bytes]:
        return await self._active.load_blob(name)

    async def delete_blob(self, name: str) -> None:
        await self._active.delete_blob(name)

    async def list_blobs(self) -> list[str]:
        return await self._active.list_blobs()

    async def size(self) -> int:
        return await self._active.size()

    async def clear_all(self) -> None:
        await self._active.clear()
        logger.info("Cleared all data from %s storage", self.active_type)


_service: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _service
    if _service is None:
        _service = StorageService()
    return _service


def set_storage(service: Optional[StorageService]) -> None:
    global _service
    _service = service
