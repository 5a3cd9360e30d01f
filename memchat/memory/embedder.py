"""Lazily loaded sentence embedding model.

The model is loaded at most once per service: concurrent first callers
await the same in-flight load instead of starting their own, and a failed
load is remembered so later calls fail fast (``embed`` returns ``None``)
until :meth:`EmbeddingService.reset` is called.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

ModelLoader = Callable[[str, str], Any]


def load_sentence_transformer(model_name: str, device: str) -> Any:
    try:
        from sentence_transformers import SentenceTransformer
    except ImportError as exc:
        raise ImportError(
            "sentence-transformers is required for semantic memory. "
            "Install with 'pip install \"memchat[embeddings]\"'."
        ) from exc
    return SentenceTransformer(model_name, device=device)


class EmbeddingService:
    def __init__(
        self,
        model_name: str,
        device: str = "cpu",
        loader: Optional[ModelLoader] = None,
    ):
        self.model_name = model_name
        self.device = device
        self._loader = loader or load_sentence_transformer
        self._model: Optional[Any] = None
        self._load_task: Optional[asyncio.Task] = None
        self._load_error: Optional[str] = None
        self.load_attempts = 0

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def load_error(self) -> Optional[str]:
        return self._load_error

    async def _load(self) -> Any:
        self.load_attempts += 1
        logger.info("Loading embedding model %s on %s", self.model_name, self.device)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._loader, self.model_name, self.device)

    async def get_model(self) -> Optional[Any]:
        if self._model is not None:
            return self._model
        if self._load_error is not None:
            return None
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        try:
            model = await asyncio.shield(self._load_task)
        except Exception as e:
            if self._load_error is None:
                self._load_error = str(e) or e.__class__.__name__
                logger.warning("Embedding model unavailable: %s", self._load_error)
            return None
        self._model = model
        return model

    async def preload(self) -> bool:
        return await self.get_model() is not None

    async def embed(self, text: str) -> Optional[np.ndarray]:
        model = await self.get_model()
        if model is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            vector = await loop.run_in_executor(None, model.encode, text)
        except Exception as e:
            logger.warning("Embedding failed: %s", e)
            return None
        return np.asarray(vector, dtype=np.float32).reshape(-1)

    def reset(self) -> None:
        """Forget the model and any cached load failure."""
        self._model = None
        self._load_task = None
        self._load_error = None
