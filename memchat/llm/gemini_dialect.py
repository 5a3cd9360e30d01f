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
    split_data_url,
)

_FINISH_REASONS = {
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "STOP": "stop",
}


class GeminiDialect(DialectAdapter):
    """Native Google Generative Language API."""

    def _convert_messages(self, messages: list[WireMessage]) -> tuple[str, list[dict]]:
        system_parts = []
        contents: list[dict] = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
                continue
            role = "model" if msg.role == "assistant" else "user"
            parts: list[dict] = [{"text": msg.content}] if msg.content else []
            for url in msg.images:
                if url.startswith("data:"):
                    mime, data = split_data_url(url)
                    parts.append({"inline_data": {"mime_type": mime, "data": data}})
                else:
                    parts.append({"file_data": {"file_uri": url}})
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        return "\n\n".join(system_parts), contents

    def build_request(
        self,
        provider: ProviderConfig,
        model_id: str,
        messages: list[WireMessage],
        params: GenerationParams,
        stream: bool = True,
    ) -> ProviderRequest:
        system, contents = self._convert_messages(messages)
        generation_config: dict = {
            "temperature": params.temperature,
            "maxOutputTokens": params.max_tokens,
        }
        if params.top_p is not None:
            generation_config["topP"] = params.top_p
        body: dict = {"contents": contents, "generationConfig": generation_config}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        model = model_id[len("models/"):] if model_id.startswith("models/") else model_id
        action = "streamGenerateContent?alt=sse" if stream else "generateContent"
        headers = {"Content-Type": "application/json"}
        if provider.api_key:
            headers["x-goog-api-key"] = provider.api_key
        return ProviderRequest(
            url=f"{base_url_of(provider)}/models/{model}:{action}",
            headers=headers,
            body=body,
        )

    def _text_of(self, payload: dict) -> tuple[str, str]:
        candidates = payload.get("candidates") or []
        if not candidates:
            return "", ""
        candidate = candidates[0] or {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        return text, candidate.get("finishReason") or ""

    def parse_event(self, data: str) -> Optional[StreamEvent]:
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("stream envelope is not an object")
        error = parsed.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return StreamEvent(error=message or "Stream error occurred")
        text, finish = self._text_of(parsed)
        return StreamEvent(text=text, finish_reason=_FINISH_REASONS.get(finish))

    def parse_completion(self, payload: dict) -> str:
        return self._text_of(payload)[0]
