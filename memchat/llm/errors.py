"""Provider error bodies -> user-facing messages."""

import json
from typing import Optional, Union

from pydantic import BaseModel

from ..exceptions import ChatStreamError, ErrorCategory

NOT_RESPONDING = (
    "The AI model is not responding. This could be due to high server load "
    "or network issues. Please try again."
)
EMPTY_RESPONSE = (
    "The AI model returned an empty response. This might be a temporary issue "
    "- please try again."
)
REQUEST_TIMED_OUT = "Request timed out. The AI model is taking too long to respond."
NO_ACTIVE_MODEL = "No active model configured. Please select a model in settings."

_CONTEXT_KEYWORDS = (
    "context length", "context_length", "context window", "maximum context",
    "too many tokens", "token limit",
)


class APIErrorDetail(BaseModel):
    message: Optional[str] = None
    code: Optional[str] = None
    type: Optional[str] = None


def decode_error_body(body: Union[bytes, str, None]) -> APIErrorDetail:
    """Best-effort decode of a provider error body; raw text as a fallback."""
    if not body:
        return APIErrorDetail()
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
    except ValueError:
        return APIErrorDetail(message=text.strip()[:300] or None)

    if isinstance(data, list) and data:
        data = data[0]  # Google wraps errors in a list on some endpoints
    if not isinstance(data, dict):
        return APIErrorDetail(message=str(data)[:300])

    error = data.get("error", data)
    if isinstance(error, str):
        return APIErrorDetail(message=error)
    if not isinstance(error, dict):
        return APIErrorDetail()
    code = error.get("code")
    return APIErrorDetail(
        message=error.get("message") or data.get("message"),
        code=str(code) if code is not None else None,
        type=error.get("type") or error.get("status"),
    )


def _is_context_error(message: str) -> bool:
    return any(k in message for k in _CONTEXT_KEYWORDS) or (
        "context" in message and "exceed" in message
    )


def describe_api_error(status: int, detail: APIErrorDetail, provider_name: str) -> ChatStreamError:
    msg = detail.message or ""
    lower = msg.lower()
    code = (detail.code or "").lower()
    kind = (detail.type or "").lower()
    is_quota = kind == "insufficient_quota" or code == "insufficient_quota" or "quota" in lower

    def err(text: str, category: ErrorCategory) -> ChatStreamError:
        return ChatStreamError(text, category, status)

    if status == 400:
        if _is_context_error(lower):
            return err(
                "Context length exceeded. Try starting a new conversation or reducing message length.",
                ErrorCategory.CONTEXT_LENGTH,
            )
        if "model" in lower:
            return err(
                "Model not found or not available. Please check the model ID in settings.",
                ErrorCategory.MODEL_NOT_FOUND,
            )
        return err(
            f"Invalid request: {msg or 'Please check your configuration.'}",
            ErrorCategory.BAD_REQUEST,
        )
    if status == 401:
        return err(
            f"Authentication failed for {provider_name}. Please check your API key in settings.",
            ErrorCategory.AUTHENTICATION,
        )
    if status == 402:
        return err(
            f"Payment required. Your {provider_name} account may have run out of credits. "
            "Please check your billing.",
            ErrorCategory.PAYMENT,
        )
    if status == 403:
        return err(
            "Access denied. Your API key may not have permission to use this model.",
            ErrorCategory.PERMISSION,
        )
    if status == 404:
        if "model" in lower or code == "model_not_found":
            return err(
                "Model not found. The model ID may be incorrect or the model is not "
                "available for your account.",
                ErrorCategory.MODEL_NOT_FOUND,
            )
        if "vision" in lower or "image" in lower:
            return err(
                "This model may not support vision/images. Please try a vision-enabled "
                "model like GPT-4o or Claude 3.",
                ErrorCategory.VISION_NOT_SUPPORTED,
            )
        return err(
            "API endpoint not found. Please verify the base URL in settings "
            "(should end with /v1 for OpenRouter).",
            ErrorCategory.ENDPOINT_NOT_FOUND,
        )
    if status == 429:
        if is_quota:
            return err(
                f"Quota exceeded. Your {provider_name} account has run out of credits.",
                ErrorCategory.QUOTA,
            )
        return err(
            "Rate limit exceeded. Please wait a moment before sending another message.",
            ErrorCategory.RATE_LIMIT,
        )
    if status in (500, 502, 503):
        return err(
            f"{provider_name} server error. The service may be temporarily unavailable. "
            "Please try again later.",
            ErrorCategory.SERVER_ERROR,
        )
    if status == 504:
        return err(
            f"{provider_name} gateway timeout. The service is taking too long to respond.",
            ErrorCategory.GATEWAY_TIMEOUT,
        )
    if is_quota:
        return err(
            f"Quota exceeded. Your {provider_name} account has run out of credits.",
            ErrorCategory.QUOTA,
        )
    if "context" in lower or "token" in lower:
        return err(
            "Context length exceeded. Try starting a new conversation or reducing message length.",
            ErrorCategory.CONTEXT_LENGTH,
        )
    return err(
        f"API Error ({status}): {msg or 'Something went wrong. Please try again.'}",
        ErrorCategory.UNKNOWN,
    )


def connection_error(provider_name: str) -> ChatStreamError:
    return ChatStreamError(
        f"Unable to connect to {provider_name}. Please check your internet connection.",
        ErrorCategory.CONNECTION,
    )
