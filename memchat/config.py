import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProviderModel(BaseModel):
    id: str
    model_id: str
    display_name: str = ""
    is_vision_model: bool = False


class ProviderConfig(BaseModel):
    id: str
    name: str = ""
    base_url: str
    api_key: str = ""
    models: list[ProviderModel] = []
    # Forces a wire dialect ("openai" | "anthropic" | "google" | "ollama")
    # instead of inferring it from base_url.
    provider_type: str = ""


class ContextConfig(BaseModel):
    system_prompt_budget: int = 500
    summary_budget: int = 1500
    rag_budget: int = 4000
    recent_messages_budget: int = 4000
    response_reserve: int = 4000
    recent_messages_count: int = 6
    rag_top_k: int = 5
    summarization_threshold: int = 10
    rag_snippet_chars: int = 300


class MemoryConfig(BaseModel):
    enabled: bool = True
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"


class StorageConfig(BaseModel):
    type: Literal["kv", "directory"] = "kv"
    directory_path: str = ""  # Remembered directory grant


class StreamingConfig(BaseModel):
    chunk_timeout: float = 30.0     # Max silence between two stream reads
    request_timeout: float = 120.0  # Whole request, first byte to last
    summarize_timeout: float = 30.0


class AppConfig(BaseModel):
    providers: list[ProviderConfig] = []
    active_provider_id: str = ""
    active_model_id: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    system_prompt: str = "You are a helpful AI assistant."
    context: ContextConfig = ContextConfig()
    memory: MemoryConfig = MemoryConfig()
    storage: StorageConfig = StorageConfig()
    streaming: StreamingConfig = StreamingConfig()


_config_dir = Path(os.environ.get("MEMCHAT_CONFIG_DIR", Path.home() / ".memchat"))


def get_config_dir() -> Path:
    return _config_dir


def _config_file() -> Path:
    return get_config_dir() / "config.json"


def _ensure_config_dir() -> None:
    get_config_dir().mkdir(parents=True, exist_ok=True)


def _encrypt_sensitive(data: dict) -> dict:
    """Encrypt provider API keys in a config dict before writing to disk."""
    from .crypto import encrypt_value

    for provider in data.get("providers", []):
        if provider.get("api_key"):
            provider["api_key"] = encrypt_value(provider["api_key"])
    return data


def _decrypt_sensitive(data: dict) -> dict:
    from .crypto import decrypt_value

    for provider in data.get("providers", []):
        if provider.get("api_key"):
            provider["api_key"] = decrypt_value(provider["api_key"])
    return data


def _needs_migration(data: dict) -> bool:
    """Return True if any API key is non-empty plaintext (no ENC: prefix)."""
    from .crypto import is_encrypted

    for provider in data.get("providers", []):
        key = provider.get("api_key", "")
        if key and not is_encrypted(key):
            return True
    return False


def load_config() -> AppConfig:
    _ensure_config_dir()
    config_file = _config_file()
    if config_file.exists():
        data = json.loads(config_file.read_text(encoding="utf-8"))

        migrate = _needs_migration(data)
        data = _decrypt_sensitive(data)
        config = AppConfig(**data)

        if migrate:
            logger.info("Migrating config to encrypted storage")
            save_config(config)

        return config
    return AppConfig()


def save_config(config: AppConfig) -> None:
    from .crypto import set_strict_permissions

    _ensure_config_dir()
    config_file = _config_file()
    data = json.loads(config.model_dump_json(indent=2))
    data = _encrypt_sensitive(data)
    config_file.write_text(
        json.dumps(data, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    set_strict_permissions(config_file)


_current_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _current_config
    if _current_config is None:
        _current_config = load_config()
    return _current_config


def update_config(config: AppConfig) -> AppConfig:
    global _current_config
    save_config(config)
    _current_config = config
    return _current_config


def reset_config_cache() -> None:
    global _current_config
    _current_config = None


def get_active_provider_and_model(
    config: AppConfig,
) -> tuple[Optional[ProviderConfig], Optional[ProviderModel]]:
    provider = next(
        (p for p in config.providers if p.id == config.active_provider_id), None
    )
    if provider is None:
        return None, None
    model = next(
        (m for m in provider.models if m.id == config.active_model_id), None
    )
    return provider, model


def has_active_model(config: AppConfig) -> bool:
    """True when a provider+model is selected and usable.

    Local providers (Ollama and friends) run without an API key.
    """
    from .llm.provider_utils import is_local_provider

    provider, model = get_active_provider_and_model(config)
    if provider is None or model is None or not provider.base_url:
        return False
    return bool(provider.api_key) or is_local_provider(provider.base_url)
