from datetime import datetime, timezone

from pydantic import BaseModel, Field

CONTENT_SNAPSHOT_CHARS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EmbeddingRecord(BaseModel):
    message_id: str
    conversation_id: str
    vector: list[float]
    content: str  # truncated snapshot of the message text
    role: str = "user"
    timestamp: str = Field(default_factory=_now)


class EmbeddingCollection(BaseModel):
    """All embeddings of one conversation; stored as a single record."""

    conversation_id: str
    records: list[EmbeddingRecord] = []


class ConversationSummaryRecord(BaseModel):
    conversation_id: str
    summary: str
    summarized_up_to_timestamp: str = ""
    token_count: int = 0
    updated_at: str = Field(default_factory=_now)


class RetrievedMemory(BaseModel):
    message_id: str
    content: str
    role: str
    timestamp: str
    score: float
