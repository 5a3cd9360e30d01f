"""
Exceptions raised by memchat.
"""

from enum import Enum


class MemchatError(Exception):
    """Base class for all memchat errors."""


class ConfigurationError(MemchatError):
    """No usable provider/model is configured; never reaches the network."""


class ChatInputError(MemchatError):
    """The requested chat operation is invalid for the given input."""


class StorageError(MemchatError):
    """A storage write (or backend selection) failed."""


class StorageAccessRevoked(StorageError):
    """The directory backend lost (or never had) its access grant.

    Distinct from a missing record, which reads as ``None``.
    """


class ErrorCategory(str, Enum):
    BAD_REQUEST = "bad_request"
    MODEL_NOT_FOUND = "model_not_found"
    AUTHENTICATION = "authentication"
    PAYMENT = "payment"
    QUOTA = "quota"
    PERMISSION = "permission"
    ENDPOINT_NOT_FOUND = "endpoint_not_found"
    VISION_NOT_SUPPORTED = "vision_not_supported"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    GATEWAY_TIMEOUT = "gateway_timeout"
    CONTEXT_LENGTH = "context_length"
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    EMPTY_RESPONSE = "empty_response"
    STREAM = "stream"
    UNKNOWN = "unknown"


class ChatStreamError(MemchatError):
    """A turn failed; ``str(error)`` is safe to show to the user."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 status_code: int | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code


class ConversationNotFound(MemchatError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id
