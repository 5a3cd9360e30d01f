from abc import ABC, abstractmethod
from typing import Any, Literal, Optional

from pydantic import BaseModel

from ..config import AppConfig, ProviderConfig

FinishReason = Literal["stop", "length", "content_filter"]


class WireMessage(BaseModel):
    """A context block ready to be sent: images are data URLs or http(s) URLs."""

    role: Literal["user", "assistant", "system"]
    content: str
    images: list[str] = []


class GenerationParams(BaseModel):
    temperature: float = 0.7
    max_tokens: int = 4096
    # None means "do not send"
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "GenerationParams":
        return cls(
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
            frequency_penalty=config.frequency_penalty,
            presence_penalty=config.presence_penalty,
        )


class ProviderRequest(BaseModel):
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class StreamEvent(BaseModel):
    """One decoded ``data:`` envelope."""

    text: str = ""
    finish_reason: Optional[FinishReason] = None
    error: Optional[str] = None
    done: bool = False


def split_data_url(url: str) -> tuple[str, str]:
    """``data:image/png;base64,AAA`` -> ``("image/png", "AAA")``."""
    header, _, data = url.partition(",")
    mime = header[5:].split(";", 1)[0] if header.startswith("data:") else ""
    return mime or "image/jpeg", data


def base_url_of(provider: ProviderConfig) -> str:
    return provider.base_url.rstrip("/")


class DialectAdapter(ABC):
    """Request building and response decoding for one wire dialect."""

    @abstractmethod
    def build_request(
        self,
        provider: ProviderConfig,
        model_id: str,
        messages: list[WireMessage],
        params: GenerationParams,
        stream: bool = True,
    ) -> ProviderRequest:
        ...

    @abstractmethod
    def parse_event(self, data: str) -> Optional[StreamEvent]:
        """Decode the payload of one ``data:`` line.

        Raises ``ValueError`` (incl. ``json.JSONDecodeError``) on malformed input.
        """
        ...

    @abstractmethod
    def parse_completion(self, payload: dict) -> str:
        """Extract the reply text from a non-streaming response body."""
        ...
