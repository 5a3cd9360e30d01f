import hashlib
import json
import re
from typing import Any, Callable

import httpx
import numpy as np
import pytest

from memchat import background
from memchat import config as config_module
from memchat.chat import set_chat_service
from memchat.config import AppConfig, ProviderConfig, ProviderModel, update_config
from memchat.conversation import summarizer
from memchat.memory.embedder import EmbeddingService
from memchat.memory.semantic import SemanticMemoryStore, set_memory_store
from memchat.storage.service import StorageService, set_storage

_WORD = re.compile(r"[a-z0-9]+")


class KeywordEncoder:
    """Deterministic bag-of-words encoder: shared words -> similar vectors."""

    dim = 64

    def __init__(self) -> None:
        self.calls = 0

    def encode(self, text: str) -> np.ndarray:
        self.calls += 1
        vec = np.zeros(self.dim, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            index = int(hashlib.sha256(word.encode()).hexdigest(), 16) % self.dim
            vec[index] += 1.0
        return vec


def sse_body(*payloads: Any, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def openai_delta(text: str, finish_reason: Any = None) -> dict:
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    monkeypatch.setattr(config_module, "_config_dir", config_dir)
    config_module.reset_config_cache()
    set_storage(None)
    set_memory_store(None)
    set_chat_service(None)
    yield config_dir
    background._tasks.clear()
    summarizer._in_flight.clear()
    config_module.reset_config_cache()
    set_storage(None)
    set_memory_store(None)
    set_chat_service(None)


@pytest.fixture
def storage(isolated_config):
    service = StorageService()
    set_storage(service)
    return service


@pytest.fixture
def encoder():
    return KeywordEncoder()


@pytest.fixture
def embedder(encoder):
    return EmbeddingService("keyword-test", loader=lambda name, device: encoder)


@pytest.fixture
def memory(storage, embedder):
    store = SemanticMemoryStore(embedder, storage=storage)
    set_memory_store(store)
    return store


@pytest.fixture
def app_config(isolated_config):
    cfg = AppConfig(
        providers=[
            ProviderConfig(
                id="openai",
                name="OpenAI",
                base_url="https://api.openai.com/v1",
                api_key="sk-test",
                models=[
                    ProviderModel(
                        id="gpt4o", model_id="gpt-4o",
                        display_name="GPT-4o", is_vision_model=True,
                    ),
                    ProviderModel(id="gpt35", model_id="gpt-3.5-turbo"),
                ],
            )
        ],
        active_provider_id="openai",
        active_model_id="gpt4o",
    )
    return update_config(cfg)
