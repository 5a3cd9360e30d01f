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

ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {"max_tokens": "length", "end_turn": "stop", "stop_sequence": "stop"}


class AnthropicDialect(DialectAdapter):
    """Anthropic Messages API (``POST {base}/messages``)."""

    def _image_part(self, url: str) -> dict:
        if url.startswith("data:"):
            media_type, data = split_data_url(url)
            source = {"type": "base64", "media_type": media_type, "data": data}
        else:
            source = {"type": "url", "url": url}
        return {"type": "image", "source": source}

    def _convert_messages(self, messages: list[WireMessage]) -> tuple[str, list[dict]]:
        system_parts = []
        converted: list[dict] = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
                continue
            parts = [{"type": "text", "text": msg.content}] if msg.content else []
            parts.extend(self._image_part(url) for url in msg.images)
            # Anthropic rejects consecutive same-role messages; merge them
            if converted and converted[-1]["role"] == msg.role:
                converted[-1]["content"].extend(parts)
            else:
                converted.append({"role": msg.role, "content": parts})
        return "\n\n".join(system_parts), converted

    def build_request(
        self,
        provider: ProviderConfig,
        model_id: str,
        messages: list[WireMessage],
        params: GenerationParams,
        stream: bool = True,
    ) -> ProviderRequest:
        system, converted = self._convert_messages(messages)
        body: dict = {
            "model": model_id,
            "messages": converted,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }
        if system:
            body["system"] = system
        # Penalties are not part of this API; top_p only when narrowed.
        if params.top_p is not None and params.top_p < 1:
            body["top_p"] = params.top_p
        if stream:
            body["stream"] = True
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if provider.api_key:
            headers["x-api-key"] = provider.api_key
        return ProviderRequest(
            url=f"{base_url_of(provider)}/messages", headers=headers, body=body
        )

    def parse_event(self, data: str) -> Optional[StreamEvent]:
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("stream envelope is not an object")
        kind = parsed.get("type")
        if kind == "error":
            error = parsed.get("error") or {}
            return StreamEvent(error=error.get("message") or "Stream error occurred")
        if kind == "content_block_delta":
            delta = parsed.get("delta") or {}
            return StreamEvent(text=delta.get("text") or "")
        if kind == "message_delta":
            stop = (parsed.get("delta") or {}).get("stop_reason") or ""
            return StreamEvent(finish_reason=_STOP_REASONS.get(stop))
        if kind == "message_stop":
            return StreamEvent(done=True)
        return None

    def parse_completion(self, payload: dict) -> str:
        return "".join(
            block.get("text", "")
            for block in payload.get("content") or []
            if block.get("type") == "text"
        )
