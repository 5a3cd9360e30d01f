"""Per-conversation semantic memory.

Every eligible message is embedded and appended to its conversation's
embedding collection; ``retrieve`` linearly scans that collection by
cosine similarity. All of it is best effort: when the embedding model is
missing or memory is switched off, writes are skipped and retrieval
returns nothing, but the chat itself keeps working.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from ..background import spawn
from ..config import get_config, update_config
from ..exceptions import StorageError
from ..storage.base import RecordKind
from ..storage.service import StorageService, get_storage
from .embedder import EmbeddingService
from .models import (
    CONTENT_SNAPSHOT_CHARS,
    ConversationSummaryRecord,
    EmbeddingCollection,
    EmbeddingRecord,
    RetrievedMemory,
)

logger = logging.getLogger(__name__)

MIN_CONTENT_CHARS = 10


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*.

    0.0 when the lengths differ or either vector has zero magnitude.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def is_embeddable(message: Any) -> bool:
    content = getattr(message, "content", "") or ""
    return getattr(message, "role", "") != "system" and len(content) >= MIN_CONTENT_CHARS


class SemanticMemoryStore:
    def __init__(
        self,
        embedder: EmbeddingService,
        storage: Optional[StorageService] = None,
        enabled: bool = True,
    ):
        self.embedder = embedder
        self._storage = storage
        self._enabled = enabled
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Tombstones: a store that began before a forget or delete must not land.
        self._seq = itertools.count()
        self._forgotten: dict[str, dict[str, int]] = defaultdict(dict)
        self._deleted: dict[str, int] = {}

    @property
    def storage(self) -> StorageService:
        return self._storage or get_storage()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool, persist: bool = True) -> None:
        """Toggle memory at runtime. Stored embeddings are left untouched."""
        self._enabled = enabled
        if persist:
            cfg = get_config().model_copy(deep=True)
            cfg.memory.enabled = enabled
            update_config(cfg)
        logger.info("Semantic memory %s", "enabled" if enabled else "disabled")

    def is_model_loaded(self) -> bool:
        return self.embedder.is_loaded

    async def preload(self) -> bool:
        return await self.embedder.preload()

    # ---- collections ----

    async def get_collection(self, conversation_id: str) -> EmbeddingCollection:
        data = await self.storage.get(RecordKind.EMBEDDINGS, conversation_id)
        if not data:
            return EmbeddingCollection(conversation_id=conversation_id)
        return EmbeddingCollection(**data)

    async def _save_collection(self, collection: EmbeddingCollection) -> None:
        await self.storage.set(
            RecordKind.EMBEDDINGS, collection.conversation_id, collection.model_dump()
        )

    # ---- writes ----

    def _superseded(self, conversation_id: str, message_id: str, started: int) -> bool:
        if self._deleted.get(conversation_id, -1) > started:
            return True
        return self._forgotten[conversation_id].get(message_id, -1) > started

    async def store(self, conversation_id: str, message: Any) -> bool:
        """Embed *message* and append it; True if a new record was written."""
        if not self._enabled or not is_embeddable(message):
            return False
        started = next(self._seq)
        try:
            existing = await self.get_collection(conversation_id)
            if any(r.message_id == message.id for r in existing.records):
                return False

            vector = await self.embedder.embed(message.content)
            if vector is None:
                return False

            async with self._locks[conversation_id]:
                if self._superseded(conversation_id, message.id, started):
                    logger.debug("Dropped embedding for %s (forgotten meanwhile)", message.id)
                    return False
                collection = await self.get_collection(conversation_id)
                if any(r.message_id == message.id for r in collection.records):
                    return False
                collection.records.append(
                    EmbeddingRecord(
                        message_id=message.id,
                        conversation_id=conversation_id,
                        vector=vector.tolist(),
                        content=message.content[:CONTENT_SNAPSHOT_CHARS],
                        role=message.role,
                        timestamp=getattr(message, "timestamp", "") or "",
                    )
                )
                await self._save_collection(collection)
            logger.debug("Stored embedding for message %s", message.id)
            return True
        except StorageError as e:
            logger.warning("Failed to store embedding for %s: %s", message.id, e)
        except Exception as e:
            logger.warning("Embedding failed for %s: %s", message.id, e)
        return False

    async def store_many(self, conversation_id: str, messages: Iterable[Any]) -> int:
        stored = 0
        for message in messages:
            if await self.store(conversation_id, message):
                stored += 1
        return stored

    def schedule_store(self, conversation_id: str, message: Any) -> None:
        """Queue :meth:`store` in the background; never awaited by the caller."""
        if not self._enabled or not is_embeddable(message):
            return
        spawn(self.store(conversation_id, message), name=f"embed-{message.id}")

    def schedule_store_many(self, conversation_id: str, messages: Iterable[Any]) -> None:
        messages = [m for m in messages if is_embeddable(m)]
        if self._enabled and messages:
            spawn(self.store_many(conversation_id, messages), name=f"embed-{conversation_id}")

    async def forget_messages(self, conversation_id: str, message_ids: Iterable[str]) -> int:
        ids = set(message_ids)
        if not ids:
            return 0
        async with self._locks[conversation_id]:
            stamp = next(self._seq)
            for message_id in ids:
                self._forgotten[conversation_id][message_id] = stamp
            collection = await self.get_collection(conversation_id)
            kept = [r for r in collection.records if r.message_id not in ids]
            removed = len(collection.records) - len(kept)
            if removed:
                collection.records = kept
                await self._save_collection(collection)
        return removed

    # ---- reads ----

    async def retrieve(
        self,
        conversation_id: str,
        query: str,
        top_k: int = 5,
        exclude_ids: Iterable[str] = (),
    ) -> list[RetrievedMemory]:
        if not self._enabled or not query.strip() or top_k <= 0:
            return []

        collection = await self.get_collection(conversation_id)
        excluded = set(exclude_ids)
        candidates = [r for r in collection.records if r.message_id not in excluded]
        if not candidates:
            return []

        query_vector = await self.embedder.embed(query)
        if query_vector is None:
            return []

        scored = [
            RetrievedMemory(
                message_id=r.message_id,
                content=r.content,
                role=r.role,
                timestamp=r.timestamp,
                score=cosine_similarity(query_vector, r.vector),
            )
            for r in candidates
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    # ---- summaries ----

    async def get_summary(self, conversation_id: str) -> Optional[ConversationSummaryRecord]:
        data = await self.storage.get(RecordKind.SUMMARIES, conversation_id)
        return ConversationSummaryRecord(**data) if data else None

    async def save_summary(self, record: ConversationSummaryRecord) -> None:
        await self.storage.set(
            RecordKind.SUMMARIES, record.conversation_id, record.model_dump()
        )

    async def delete_all(self, conversation_id: str) -> None:
        async with self._locks[conversation_id]:
            self._deleted[conversation_id] = next(self._seq)
            self._forgotten.pop(conversation_id, None)
            await self.storage.delete(RecordKind.EMBEDDINGS, conversation_id)
            await self.storage.delete(RecordKind.SUMMARIES, conversation_id)


_store: Optional[SemanticMemoryStore] = None


def get_memory_store() -> SemanticMemoryStore:
    global _store
    if _store is None:
        cfg = get_config().memory
        _store = SemanticMemoryStore(
            EmbeddingService(cfg.embedding_model, cfg.device),
            enabled=cfg.enabled,
        )
    return _store


def set_memory_store(store: Optional[SemanticMemoryStore]) -> None:
    global _store
    _store = store
