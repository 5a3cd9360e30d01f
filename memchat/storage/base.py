from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional


class RecordKind(str, Enum):
    CONVERSATIONS = "conversations"
    EMBEDDINGS = "embeddings"    # one collection per conversation id
    SUMMARIES = "summaries"      # one summary per conversation id
    FOLDERS = "folders"


# Binary media lives in its own blob namespace, keyed "<sha256>.<ext>".
MEDIA_NAMESPACE = "media"


class StorageBackend(ABC):
    """Namespaced record + blob storage.

    Reads of a missing key return ``None``; write failures raise.
    """

    name: str = ""

    async def init(self) -> bool:
        """Prepare the backend; returns False when it is not usable yet."""
        return True

    @abstractmethod
    async def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, kind: RecordKind, record_id: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, kind: RecordKind, record_id: str) -> None:
        ...

    @abstractmethod
    async def list_ids(self, kind: RecordKind) -> list[str]:
        ...

    @abstractmethod
    async def save_blob(self, name: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def load_blob(self, name: str) -> Optional[bytes]:
        ...

    @abstractmethod
    async def delete_blob(self, name: str) -> None:
        ...

    @abstractmethod
    async def list_blobs(self) -> list[str]:
        ...

    @abstractmethod
    async def size(self) -> int:
        """Best-effort total bytes held by this backend."""

    async def clear(self) -> None:
        for kind in RecordKind:
            for record_id in await self.list_ids(kind):
                await self.delete(kind, record_id)
        for name in await self.list_blobs():
            await self.delete_blob(name)
