from ..config import (
    AppConfig,
    ProviderConfig,
    ProviderModel,
    get_active_provider_and_model,
    has_active_model,
)
from ..exceptions import ConfigurationError
from .anthropic_dialect import AnthropicDialect
from .base import DialectAdapter
from .errors import NO_ACTIVE_MODEL
from .gemini_dialect import GeminiDialect
from .ollama_dialect import OllamaDialect
from .openai_dialect import OpenAIDialect
from .provider_utils import ProviderDialect, classify_dialect, get_provider_display_name

_ADAPTERS: dict[ProviderDialect, DialectAdapter] = {
    ProviderDialect.OPENAI_COMPATIBLE: OpenAIDialect(),
    ProviderDialect.ANTHROPIC: AnthropicDialect(),
    ProviderDialect.GOOGLE_NATIVE: GeminiDialect(),
    ProviderDialect.OLLAMA: OllamaDialect(),
}


def get_adapter(dialect: ProviderDialect) -> DialectAdapter:
    return _ADAPTERS[dialect]


def dialect_for(provider: ProviderConfig) -> ProviderDialect:
    return classify_dialect(provider.base_url, provider.provider_type)


def adapter_for(provider: ProviderConfig) -> DialectAdapter:
    return get_adapter(dialect_for(provider))


def provider_name(provider: ProviderConfig) -> str:
    return provider.name or get_provider_display_name(provider.base_url)


def require_active_model(config: AppConfig) -> tuple[ProviderConfig, ProviderModel]:
    """The selected provider and model; ConfigurationError when unusable."""
    if not has_active_model(config):
        raise ConfigurationError(NO_ACTIVE_MODEL)
    provider, model = get_active_provider_and_model(config)
    return provider, model
