import json
from typing import Optional

from ..config import ProviderConfig
from .base import (
    DialectAdapter,
    GenerationParams,
    ProviderRequest,
    StreamEvent,
    WireMessage,
    base_url_of,
)
from .provider_utils import get_image_format_config, get_provider_key

APP_TITLE = "memchat"
APP_REFERER = "http://localhost"

_FINISH_REASONS = {"length": "length", "content_filter": "content_filter", "stop": "stop"}


class OpenAIDialect(DialectAdapter):
    """OpenAI-compatible ``/chat/completions`` (OpenAI, OpenRouter, Groq, ...)."""

    def _convert_message(self, msg: WireMessage, supports_detail: bool) -> dict:
        if not msg.images:
            return {"role": msg.role, "content": msg.content}
        parts: list[dict] = [{"type": "text", "text": msg.content}]
        for url in msg.images:
            image_url = {"url": url}
            if supports_detail:
                image_url["detail"] = "auto"
            parts.append({"type": "image_url", "image_url": image_url})
        return {"role": msg.role, "content": parts}

    def _headers(self, provider: ProviderConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if provider.api_key:
            headers["Authorization"] = f"Bearer {provider.api_key}"
        if get_provider_key(provider.base_url) == "openrouter":
            headers["HTTP-Referer"] = APP_REFERER
            headers["X-Title"] = APP_TITLE
        return headers

    def _apply_params(self, body: dict, provider: ProviderConfig,
                      params: GenerationParams, has_images: bool) -> None:
        if get_provider_key(provider.base_url) == "sambanova":
            # SambaNova rejects penalties; vision models also reject top_p
            # and cap max_tokens at 4K.
            if has_images:
                body["max_tokens"] = min(params.max_tokens, 4000)
                return
            body["max_tokens"] = params.max_tokens
            if params.top_p is not None:
                body["top_p"] = params.top_p
            return

        body["max_tokens"] = params.max_tokens
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.frequency_penalty is not None:
            body["frequency_penalty"] = params.frequency_penalty
        if params.presence_penalty is not None:
            body["presence_penalty"] = params.presence_penalty

    def build_request(
        self,
        provider: ProviderConfig,
        model_id: str,
        messages: list[WireMessage],
        params: GenerationParams,
        stream: bool = True,
    ) -> ProviderRequest:
        supports_detail = get_image_format_config(provider.base_url).supports_detail_param
        body: dict = {
            "model": model_id,
            "messages": [self._convert_message(m, supports_detail) for m in messages],
            "temperature": params.temperature,
        }
        if stream:
            body["stream"] = True
        self._apply_params(body, provider, params, any(m.images for m in messages))
        return ProviderRequest(
            url=f"{base_url_of(provider)}/chat/completions",
            headers=self._headers(provider),
            body=body,
        )

    def parse_event(self, data: str) -> Optional[StreamEvent]:
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("stream envelope is not an object")
        error = parsed.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return StreamEvent(error=message or "Stream error occurred")
        choices = parsed.get("choices") or []
        if not choices:
            return None
        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        return StreamEvent(
            text=delta.get("content") or "",
            finish_reason=_FINISH_REASONS.get(choice.get("finish_reason") or ""),
        )

    def parse_completion(self, payload: dict) -> str:
        choices = payload.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""
