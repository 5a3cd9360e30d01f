"""Approximate token accounting.

One token is taken to be about four characters of text. This is not the
count any real tokenizer would produce; it is only used to keep assembled
prompts comfortably inside a model's context window.
"""

import math
from typing import Any, Iterable

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role + structure framing per message

DEFAULT_TOKEN_LIMIT = 28000

# Matched by substring against the lower-cased model id, in order.
TOKEN_LIMITS: dict[str, int] = {
    "gemini-2.5-pro": 1900000,
    "gemini-1.5-pro": 900000,
    "gemini-1.5-flash": 900000,
    "claude-3.5-sonnet": 180000,
    "claude-3-opus": 180000,
    "claude-3-sonnet": 180000,
    "claude-3-haiku": 180000,
    "gpt-4-turbo": 115000,
    "gpt-4o": 115000,
    "gpt-4o-mini": 115000,
    "gpt-4-1106": 115000,
    "deepseek-chat": 60000,
    "deepseek-coder": 60000,
    "llama-3.1-405b": 115000,
    "llama-3.1-70b": 115000,
    "llama-3.2": 115000,
    "mistral-large": 115000,
    "qwen": 28000,
}

# Broader family prefixes tried when no exact entry matched.
_FAMILY_FALLBACKS: list[tuple[str, str]] = [
    ("gemini-2", "gemini-2.5-pro"),
    ("gemini-1.5", "gemini-1.5-pro"),
    ("claude-3", "claude-3.5-sonnet"),
    ("gpt-4", "gpt-4-turbo"),
    ("llama-3", "llama-3.1-70b"),
    ("deepseek", "deepseek-chat"),
]


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        return message.get("content") or ""
    return getattr(message, "content", "") or ""


def estimate_messages_tokens(messages: Iterable[Any]) -> int:
    """Sum of per-message estimates plus a fixed framing overhead each.

    Accepts plain ``{"role", "content"}`` dicts or any object exposing a
    ``content`` attribute (messages, context blocks).
    """
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(_content_of(message))
    return total


def get_token_limit(model_id: str) -> int:
    model = (model_id or "").lower()
    for key, limit in TOKEN_LIMITS.items():
        if key in model:
            return limit
    for prefix, key in _FAMILY_FALLBACKS:
        if prefix in model:
            return TOKEN_LIMITS[key]
    return DEFAULT_TOKEN_LIMIT


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut ``text`` so its estimate stays within ``max_tokens``.

    A trailing ``...`` marks the cut and is counted inside the limit.
    """
    if estimate_tokens(text) <= max_tokens:
        return text
    if max_tokens <= 0:
        return ""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if max_chars <= 3:
        return text[:max_chars]
    return text[: max_chars - 3] + "..."
