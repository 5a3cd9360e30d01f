"""Provider detection from a base URL.

Everything here is keyed off the provider's base URL: which wire dialect
it speaks, which models are known to accept images, and how images must
be attached.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ProviderDialect(str, Enum):
    OPENAI_COMPATIBLE = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE_NATIVE = "google"
    OLLAMA = "ollama"


VISION_MODELS: dict[str, list[str]] = {
    "openai": [
        "gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4-vision-preview",
        "gpt-4-turbo-2024-04-09", "gpt-4-1106-vision-preview",
    ],
    "anthropic": [
        "claude-3-opus", "claude-3-sonnet", "claude-3-haiku",
        "claude-3.5-sonnet", "claude-3-5-sonnet", "claude-3.5-haiku",
        "claude-3-opus-20240229", "claude-3-sonnet-20240229", "claude-3-haiku-20240307",
    ],
    "google": [
        "gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.0-flash",
        "gemini-pro-vision", "gemini-1.5-pro-latest", "gemini-1.5-flash-latest",
    ],
    "ollama": [
        "llava", "llava:7b", "llava:13b", "llava:34b",
        "bakllava", "llava-llama3", "llava-phi3",
        "moondream", "minicpm-v",
    ],
    "groq": [
        "llama-3.2-11b-vision-preview", "llama-3.2-90b-vision-preview",
        "llama-guard-3-11b-vision",
    ],
    "mistral": [
        "pixtral-12b-2409", "pixtral-12b", "pixtral-large-latest",
        "mistral-small-3.1-24b-instruct",
    ],
    "together": [
        "meta-llama/Llama-3.2-11B-Vision-Instruct-Turbo",
        "meta-llama/Llama-3.2-90B-Vision-Instruct-Turbo",
    ],
    "sambanova": ["Llama-3.2-11B-Vision-Instruct", "Llama-3.2-90B-Vision-Instruct"],
    "openrouter": [],  # uses the underlying model names
    "deepseek": [],
    "fireworks": ["firellava-13b"],
    "perplexity": [],
}

_PROVIDER_KEYS: list[tuple[tuple[str, ...], str]] = [
    (("openai.com",), "openai"),
    (("anthropic.com",), "anthropic"),
    (("googleapis.com",), "google"),
    (("ollama", ":11434"), "ollama"),
    (("groq.com",), "groq"),
    (("mistral.ai",), "mistral"),
    (("together.xyz", "together.ai"), "together"),
    (("sambanova.ai",), "sambanova"),
    (("openrouter.ai",), "openrouter"),
    (("deepseek.com",), "deepseek"),
    (("fireworks.ai",), "fireworks"),
    (("perplexity.ai",), "perplexity"),
]

_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google AI",
    "ollama": "Ollama",
    "groq": "Groq",
    "mistral": "Mistral",
    "together": "Together AI",
    "sambanova": "SambaNova",
    "openrouter": "OpenRouter",
    "deepseek": "DeepSeek",
    "fireworks": "Fireworks",
    "perplexity": "Perplexity",
    "custom": "Custom",
}

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0", "[::1]")


def classify_dialect(base_url: str, override: str = "") -> ProviderDialect:
    if override:
        return ProviderDialect(override)
    url = base_url.lower()
    if "ollama" in url or ":11434" in url:
        return ProviderDialect.OLLAMA
    if "anthropic.com" in url:
        return ProviderDialect.ANTHROPIC
    if "generativelanguage.googleapis.com" in url and "/openai" not in url:
        return ProviderDialect.GOOGLE_NATIVE
    return ProviderDialect.OPENAI_COMPATIBLE


def get_provider_key(base_url: str) -> str:
    url = base_url.lower()
    for needles, key in _PROVIDER_KEYS:
        if any(n in url for n in needles):
            return key
    return "custom"


def is_local_provider(base_url: str) -> bool:
    url = base_url.lower()
    return get_provider_key(url) == "ollama" or any(h in url for h in _LOCAL_HOSTS)


def is_known_vision_model(model_id: str, base_url: str) -> bool:
    model = model_id.lower()
    if not model:
        return False
    for vm in VISION_MODELS.get(get_provider_key(base_url), []):
        vm = vm.lower()
        if vm in model or model in vm:
            return True
    return False


class ImageFormatConfig(BaseModel):
    supports_detail_param: bool = True
    supports_url_images: bool = True
    max_image_size: Optional[int] = None  # bytes
    max_images: Optional[int] = None


_MB = 1024 * 1024

_IMAGE_FORMATS: dict[str, ImageFormatConfig] = {
    "ollama": ImageFormatConfig(
        supports_detail_param=False, supports_url_images=False, max_images=10,
    ),
    "sambanova": ImageFormatConfig(supports_detail_param=False, max_image_size=4 * _MB),
    "groq": ImageFormatConfig(supports_detail_param=False, max_image_size=4 * _MB, max_images=5),
    "mistral": ImageFormatConfig(supports_detail_param=False, max_image_size=10 * _MB),
    "anthropic": ImageFormatConfig(
        supports_detail_param=False, max_image_size=30 * _MB, max_images=100,
    ),
}

_DEFAULT_IMAGE_FORMAT = ImageFormatConfig(max_image_size=20 * _MB, max_images=500)


def get_image_format_config(base_url: str) -> ImageFormatConfig:
    return _IMAGE_FORMATS.get(get_provider_key(base_url), _DEFAULT_IMAGE_FORMAT)


def get_provider_display_name(base_url: str) -> str:
    return _DISPLAY_NAMES.get(get_provider_key(base_url), "Unknown")
