import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant", "system"]
    content: str
    images: list[str] = []  # media refs ("media:<hash>.<ext>") or http(s) urls
    token_count: Optional[int] = None
    timestamp: str = Field(default_factory=_now)
    parent_id: Optional[str] = None
    sibling_index: int = 0
    total_siblings: int = 1


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "New Chat"
    model: str = ""
    messages: list[Message] = []
    # Alternatives dropped by regenerate/edit; reachable via branch navigation.
    branches: list[Message] = []
    summary: Optional[str] = None
    summarized_up_to: int = 0  # messages[:summarized_up_to] are in the summary
    folder_id: Optional[str] = None
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)


class ConversationListItem(BaseModel):
    """Lightweight metadata for the list view."""

    id: str
    title: str
    model: str = ""
    message_count: int = 0
    preview: str = ""  # First ~80 chars of first user message
    folder_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class Folder(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    created_at: str = Field(default_factory=_now)
