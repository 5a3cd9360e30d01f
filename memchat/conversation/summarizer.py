"""Rolling conversation summaries.

The decision is pure (:func:`summarization_backlog`); the actual
condensation is a non-streaming call to the active model, run in the
background after a turn completes so the user never waits on it.
"""

import logging
from typing import Optional, Sequence

import httpx

from ..background import spawn
from ..config import AppConfig, get_config
from ..llm.base import GenerationParams, WireMessage
from ..llm.registry import adapter_for, provider_name, require_active_model
from ..llm.streaming import complete
from ..memory.models import ConversationSummaryRecord
from ..memory.semantic import get_memory_store
from ..tokenizer import estimate_tokens
from .models import Message

logger = logging.getLogger(__name__)

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, informative summaries of conversations."
)
SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 2000

_BASE_PROMPT = """\
Summarize this conversation concisely, preserving:
- Key topics and decisions
- User preferences and requirements
- Important facts and conclusions
- Pending questions or tasks

Keep under 1500 words. Focus on information needed to continue naturally."""


def summarization_backlog(
    messages: Sequence[Message],
    has_summary: bool,
    recent_count: int = 6,
    threshold: int = 10,
) -> list[Message]:
    """Messages older than the recent window, if they are due for a summary.

    Due means: more than *threshold* of them and no summary exists yet.
    """
    older = list(messages[:-recent_count]) if len(messages) > recent_count else []
    if len(older) > threshold and not has_summary:
        return older
    return []


def create_summarization_prompt(
    messages: Sequence[Message], existing_summary: Optional[str] = None
) -> str:
    conversation_text = "".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}\n\n"
        for m in messages
    )
    if existing_summary:
        return (
            f"{_BASE_PROMPT}\n\nPrevious summary:\n{existing_summary}"
            f"\n\nNew messages:\n{conversation_text}\n\nUpdated summary:"
        )
    return f"{_BASE_PROMPT}\n\nConversation:\n{conversation_text}\n\nSummary:"


async def summarize_messages(
    messages: Sequence[Message],
    existing_summary: Optional[str] = None,
    config: Optional[AppConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    config = config or get_config()
    provider, model = require_active_model(config)
    adapter = adapter_for(provider)
    request = adapter.build_request(
        provider,
        model.model_id,
        [
            WireMessage(role="system", content=SUMMARIZER_SYSTEM_PROMPT),
            WireMessage(role="user", content=create_summarization_prompt(messages, existing_summary)),
        ],
        GenerationParams(temperature=SUMMARY_TEMPERATURE, max_tokens=SUMMARY_MAX_TOKENS),
        stream=False,
    )
    text = await complete(
        request, adapter, provider_name(provider),
        timeout=config.streaming.summarize_timeout, client=client,
    )
    return text.strip()


async def generate_summary(
    conversation_id: str,
    messages: Sequence[Message],
    config: Optional[AppConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[ConversationSummaryRecord]:
    """Summarize *messages*, persist the record and advance the watermark."""
    from .storage import get_conversation, save_conversation

    if not messages:
        return None
    memory = get_memory_store()
    existing = await memory.get_summary(conversation_id)
    text = await summarize_messages(
        messages, existing.summary if existing else None, config, client
    )
    if not text:
        logger.info("Summarizer returned nothing for conversation %s", conversation_id)
        return None

    record = ConversationSummaryRecord(
        conversation_id=conversation_id,
        summary=text,
        summarized_up_to_timestamp=messages[-1].timestamp,
        token_count=estimate_tokens(text),
    )
    await memory.save_summary(record)

    conv = await get_conversation(conversation_id)
    if conv is not None:
        last_id = messages[-1].id
        index = next((i for i, m in enumerate(conv.messages) if m.id == last_id), None)
        if index is not None:
            conv.summary = text
            conv.summarized_up_to = max(conv.summarized_up_to, index + 1)
            await save_conversation(conv)
    logger.info(
        "Summarized %d messages of conversation %s (%d tokens)",
        len(messages), conversation_id, record.token_count,
    )
    return record


_in_flight: set[str] = set()


def trigger_summary_generation(
    conversation_id: str,
    messages: Sequence[Message],
    config: Optional[AppConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Schedule :func:`generate_summary` as a background task.

    At most one run per conversation; returns False when one is already
    pending.
    """
    if conversation_id in _in_flight:
        logger.debug("Summary of %s already in progress", conversation_id)
        return False
    task = spawn(
        generate_summary(conversation_id, list(messages), config, client),
        name=f"summarize-{conversation_id}",
    )
    if task is None:
        return False
    _in_flight.add(conversation_id)
    task.add_done_callback(lambda _: _in_flight.discard(conversation_id))
    return True
