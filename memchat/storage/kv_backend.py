"""Embedded key-value backend on SQLite.

Always available: records and blobs live in one ``store.db`` file under the
config directory. Each call opens its own connection and runs on the
default executor so the event loop never blocks on disk.
"""

import asyncio
import json
import logging
import sqlite3
from functools import partial
from pathlib import Path
from typing import Any, Optional

from ..exceptions import StorageError
from .base import RecordKind, StorageBackend

logger = logging.getLogger(__name__)


class KeyValueBackend(StorageBackend):
    name = "kv"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS blobs (
                    name TEXT PRIMARY KEY,
                    data BLOB NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()
        logger.info("Key-value store initialized at %s", self.db_path)

    async def _run(self, fn, *args):
        if not self._initialized:
            await self.init()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except sqlite3.Error as e:
            raise StorageError(f"Key-value store error: {e}") from e

    async def init(self) -> bool:
        if not self._initialized:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._init_db)
            self._initialized = True
        return True

    # ---- records ----

    def _get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT value FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["value"]) if row else None

    def _set(self, kind: RecordKind, record_id: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO records (kind, id, value) VALUES (?, ?, ?)",
                (kind.value, record_id, payload),
            )
            conn.commit()
        finally:
            conn.close()

    def _delete(self, kind: RecordKind, record_id: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                "DELETE FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            )
            conn.commit()
        finally:
            conn.close()

    def _list_ids(self, kind: RecordKind) -> list[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT id FROM records WHERE kind = ? ORDER BY id", (kind.value,)
            ).fetchall()
        finally:
            conn.close()
        return [r["id"] for r in rows]

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
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO blobs (name, data) VALUES (?, ?)",
                (name, sqlite3.Binary(data)),
            )
            conn.commit()
        finally:
            conn.close()

    def _load_blob(self, name: str) -> Optional[bytes]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT data FROM blobs WHERE name = ?", (name,)
            ).fetchone()
        finally:
            conn.close()
        return bytes(row["data"]) if row else None

    def _delete_blob(self, name: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute("DELETE FROM blobs WHERE name = ?", (name,))
            conn.commit()
        finally:
            conn.close()

    def _list_blobs(self) -> list[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT name FROM blobs ORDER BY name").fetchall()
        finally:
            conn.close()
        return [r["name"] for r in rows]

    def _size(self) -> int:
        conn = self._get_connection()
        try:
            records = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(value)), 0) FROM records"
            ).fetchone()[0]
            blobs = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(data)), 0) FROM blobs"
            ).fetchone()[0]
        finally:
            conn.close()
        return int(records) + int(blobs)

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

    def _clear(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("DELETE FROM records")
            conn.execute("DELETE FROM blobs")
            conn.commit()
        finally:
            conn.close()

    async def clear(self) -> None:
        await self._run(self._clear)
