from ..config import ProviderConfig
from .base import GenerationParams, ProviderRequest, WireMessage, base_url_of, split_data_url
from .openai_dialect import OpenAIDialect


class OllamaDialect(OpenAIDialect):
    """Ollama's OpenAI-compatible endpoint.

    Images travel as a per-message ``images`` array of raw base64 strings,
    and no Authorization header is ever sent.
    """

    def _convert_message(self, msg: WireMessage, supports_detail: bool) -> dict:
        converted = {"role": msg.role, "content": msg.content}
        if msg.images:
            converted["images"] = [
                split_data_url(url)[1] if url.startswith("data:") else url
                for url in msg.images
            ]
        return converted

    def build_request(
        self,
        provider: ProviderConfig,
        model_id: str,
        messages: list[WireMessage],
        params: GenerationParams,
        stream: bool = True,
    ) -> ProviderRequest:
        body: dict = {
            "model": model_id,
            "messages": [self._convert_message(m, False) for m in messages],
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }
        if stream:
            body["stream"] = True
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.frequency_penalty is not None:
            body["frequency_penalty"] = params.frequency_penalty
        if params.presence_penalty is not None:
            body["presence_penalty"] = params.presence_penalty
        return ProviderRequest(
            url=f"{base_url_of(provider)}/chat/completions",
            headers={"Content-Type": "application/json"},
            body=body,
        )
