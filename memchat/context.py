"""Token-budgeted prompt assembly.

The prompt is filled in priority order, each source capped by its own
budget and by what is left of the working budget (model limit minus the
response reserve):

1. system prompt
2. rolling summary, between ``[Conversation Summary]`` markers
3. semantically related older messages, as bullet snippets
4. the most recent turns, verbatim

Recent turns are taken newest first, so when the budget runs out it is
the oldest turns of the window that are left out.
"""

import logging
from typing import Literal, Optional, Sequence

from pydantic import BaseModel

from .config import ContextConfig
from .conversation.models import Message
from .conversation.summarizer import summarization_backlog
from .memory.semantic import SemanticMemoryStore
from .tokenizer import (
    MESSAGE_OVERHEAD_TOKENS,
    estimate_messages_tokens,
    estimate_tokens,
    get_token_limit,
    truncate_to_tokens,
)

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[Conversation Summary]\n"
SUMMARY_FOOTER = "\n[End Summary]"
RAG_HEADER = "[Relevant Context from Earlier]\n"
RAG_FOOTER = "[End Relevant Context]"


class ContextBlock(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    source_message_id: Optional[str] = None
    images: list[str] = []


class ContextResult(BaseModel):
    blocks: list[ContextBlock]
    needs_summarization: bool = False
    messages_pending_summarization: list[Message] = []
    token_count: int = 0
    token_limit: int = 0
    used_memory: bool = True  # False when the memory-free fallback produced this
    retrieved_message_ids: list[str] = []
    truncated: list[str] = []  # "system_prompt" | "summary" | "recent"


def _wrapped(header: str, body: str, footer: str, cap: int) -> Optional[str]:
    """``header + body + footer`` cut so its estimate stays within *cap*."""
    body_cap = cap - estimate_tokens(header) - estimate_tokens(footer)
    if body_cap <= 0:
        return None
    text = truncate_to_tokens(body, body_cap)
    if not text:
        return None
    return f"{header}{text}{footer}"


def _rag_snippet(content: str, max_chars: int) -> str:
    suffix = "..." if len(content) > max_chars else ""
    return f"- {content[:max_chars]}{suffix}\n"


class ContextAssembler:
    def __init__(self, memory: SemanticMemoryStore, settings: Optional[ContextConfig] = None):
        self.memory = memory
        self.settings = settings or ContextConfig()

    def working_budget(self, model_id: str) -> int:
        return max(get_token_limit(model_id) - self.settings.response_reserve, 0)

    def _summarization_backlog(
        self, messages: Sequence[Message], has_summary: bool
    ) -> list[Message]:
        return summarization_backlog(
            messages,
            has_summary,
            recent_count=self.settings.recent_messages_count,
            threshold=self.settings.summarization_threshold,
        )

    def _add_system_prompt(self, blocks: list[ContextBlock], truncated: list[str],
                           system_prompt: Optional[str], remaining: int) -> int:
        prompt = (system_prompt or "").strip()
        cap = min(self.settings.system_prompt_budget, remaining - MESSAGE_OVERHEAD_TOKENS)
        if not prompt or cap <= 0:
            return remaining
        text = truncate_to_tokens(prompt, cap)
        if text != prompt:
            truncated.append("system_prompt")
        blocks.append(ContextBlock(role="system", content=text))
        return remaining - estimate_tokens(text) - MESSAGE_OVERHEAD_TOKENS

    def _add_summary(self, blocks: list[ContextBlock], truncated: list[str],
                     summary: Optional[str], remaining: int) -> int:
        summary = (summary or "").strip()
        cap = min(self.settings.summary_budget, remaining - MESSAGE_OVERHEAD_TOKENS)
        if not summary or cap <= 0:
            return remaining
        content = _wrapped(SUMMARY_HEADER, summary, SUMMARY_FOOTER, cap)
        if content is None:
            truncated.append("summary")
            return remaining
        if not content.endswith(summary + SUMMARY_FOOTER):
            truncated.append("summary")
        blocks.append(ContextBlock(role="system", content=content))
        return remaining - estimate_tokens(content) - MESSAGE_OVERHEAD_TOKENS

    def _add_recent(self, blocks: list[ContextBlock], truncated: list[str],
                    window: Sequence[Message], remaining: int) -> int:
        cap = min(self.settings.recent_messages_budget, remaining)
        used = 0
        picked: list[ContextBlock] = []
        for index, msg in enumerate(reversed(window)):
            cost = estimate_tokens(msg.content) + MESSAGE_OVERHEAD_TOKENS
            content = msg.content
            if used + cost > cap:
                if index > 0:
                    truncated.append("recent")
                    break
                # The newest turn is always sent, cut to fit if need be.
                content = truncate_to_tokens(msg.content, cap - MESSAGE_OVERHEAD_TOKENS)
                truncated.append("recent")
                if not content:
                    break
                cost = estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS
            picked.append(
                ContextBlock(
                    role=msg.role,
                    content=content,
                    source_message_id=msg.id,
                    images=list(msg.images),
                )
            )
            used += cost
        picked.reverse()
        blocks.extend(picked)
        return remaining - used

    async def assemble_with_memory(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        system_prompt: Optional[str],
        model_id: str,
    ) -> ContextResult:
        working = self.working_budget(model_id)
        remaining = working
        blocks: list[ContextBlock] = []
        truncated: list[str] = []

        remaining = self._add_system_prompt(blocks, truncated, system_prompt, remaining)

        record = await self.memory.get_summary(conversation_id)
        has_summary = bool(record and record.summary)
        if has_summary:
            remaining = self._add_summary(blocks, truncated, record.summary, remaining)

        count = self.settings.recent_messages_count
        window = list(messages[-count:]) if count > 0 else []
        retrieved_ids: list[str] = []

        if len(messages) > count:
            query = " ".join(m.content for m in window if m.role == "user").strip()
            cap = min(self.settings.rag_budget, remaining - MESSAGE_OVERHEAD_TOKENS)
            if query and cap > 0:
                try:
                    related = await self.memory.retrieve(
                        conversation_id,
                        query,
                        top_k=self.settings.rag_top_k,
                        exclude_ids=[m.id for m in window],
                    )
                except Exception as e:
                    logger.debug("Retrieval failed, continuing without it: %s", e)
                    related = []

                used = estimate_tokens(RAG_HEADER) + estimate_tokens(RAG_FOOTER)
                lines = []
                for memory in related:
                    line = _rag_snippet(memory.content, self.settings.rag_snippet_chars)
                    line_tokens = estimate_tokens(line)
                    if used + line_tokens > cap:
                        break
                    lines.append(line)
                    retrieved_ids.append(memory.message_id)
                    used += line_tokens
                if lines:
                    content = RAG_HEADER + "".join(lines) + RAG_FOOTER
                    blocks.append(ContextBlock(role="system", content=content))
                    remaining -= estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS

        self._add_recent(blocks, truncated, window, remaining)

        backlog = self._summarization_backlog(messages, has_summary)
        return ContextResult(
            blocks=blocks,
            needs_summarization=bool(backlog),
            messages_pending_summarization=backlog,
            token_count=estimate_messages_tokens(blocks),
            token_limit=working,
            used_memory=True,
            retrieved_message_ids=retrieved_ids,
            truncated=truncated,
        )

    def assemble_basic(
        self,
        messages: Sequence[Message],
        system_prompt: Optional[str],
        existing_summary: Optional[str],
        model_id: str,
    ) -> ContextResult:
        """Memory-free variant: system prompt, given summary, newest turns that fit."""
        working = self.working_budget(model_id)
        blocks: list[ContextBlock] = []
        truncated: list[str] = []

        remaining = self._add_system_prompt(blocks, truncated, system_prompt, working)
        remaining = self._add_summary(blocks, truncated, existing_summary, remaining)

        used = 0
        picked: list[ContextBlock] = []
        for index, msg in enumerate(reversed(messages)):
            content = msg.content
            cost = estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS
            if used + cost > remaining:
                if index > 0:
                    truncated.append("recent")
                    break
                content = truncate_to_tokens(content, remaining - MESSAGE_OVERHEAD_TOKENS)
                truncated.append("recent")
                if not content:
                    break
                cost = estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS
            picked.append(
                ContextBlock(
                    role=msg.role, content=content,
                    source_message_id=msg.id, images=list(msg.images),
                )
            )
            used += cost
        picked.reverse()
        blocks.extend(picked)

        backlog = self._summarization_backlog(messages, bool((existing_summary or "").strip()))
        return ContextResult(
            blocks=blocks,
            needs_summarization=bool(backlog),
            messages_pending_summarization=backlog,
            token_count=estimate_messages_tokens(blocks),
            token_limit=working,
            used_memory=False,
            truncated=truncated,
        )

    async def assemble(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        system_prompt: Optional[str],
        model_id: str,
        existing_summary: Optional[str] = None,
    ) -> ContextResult:
        """Memory-aware assembly, falling back to :meth:`assemble_basic` on any error."""
        try:
            return await self.assemble_with_memory(
                conversation_id, messages, system_prompt, model_id
            )
        except Exception as e:
            logger.warning("Context assembly with memory failed, using fallback: %s", e)
            return self.assemble_basic(messages, system_prompt, existing_summary, model_id)
