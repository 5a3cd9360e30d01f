"""Chat turns: persist the user message, assemble context, stream the reply.

A turn is prepared first (validation, media, persistence) so input and
configuration errors surface before any bytes are streamed, then
:meth:`ChatService.respond` drives the provider stream and yields
:class:`ChatEvent` objects in arrival order.
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, Literal, Optional

import httpx
from pydantic import BaseModel

from .config import AppConfig, ProviderConfig, ProviderModel, get_config
from .context import ContextAssembler, ContextResult
from .conversation.branching import (
    append_message,
    navigate_branch,
    truncate_for_edit,
    truncate_for_regenerate,
)
from .conversation.models import Conversation, Message
from .conversation.storage import (
    create_conversation,
    get_conversation,
    make_title,
    save_conversation,
)
from .conversation.summarizer import trigger_summary_generation
from .exceptions import ChatInputError, ChatStreamError, ConversationNotFound, ErrorCategory
from .llm.base import GenerationParams, WireMessage
from .llm.provider_utils import get_image_format_config, is_known_vision_model
from .llm.registry import adapter_for, provider_name, require_active_model
from .llm.streaming import ResponseStream, StreamState
from .media import is_media_ref, is_remote_url, parse_data_url, resolve_many, store_media
from .memory.semantic import SemanticMemoryStore, get_memory_store
from .tokenizer import estimate_tokens

logger = logging.getLogger(__name__)


class ChatEvent(BaseModel):
    type: Literal["start", "token", "notice", "done", "error", "summarizing"]
    content: str = ""
    reason: Optional[str] = None  # done: "complete" | "stalled" | "cancelled"
    category: Optional[ErrorCategory] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class ChatTurn(BaseModel):
    """A user message that has been persisted and is waiting for its reply."""

    conversation: Conversation
    user_message: Message
    provider: ProviderConfig
    model: ProviderModel
    config: AppConfig


def _supports_vision(provider: ProviderConfig, model: ProviderModel) -> bool:
    return model.is_vision_model or is_known_vision_model(model.model_id, provider.base_url)


def _check_image_limits(images: list[str], provider: ProviderConfig) -> None:
    """Reject attachments the provider would refuse, before anything is stored."""
    limits = get_image_format_config(provider.base_url)
    name = provider_name(provider)
    if limits.max_images is not None and len(images) > limits.max_images:
        raise ChatInputError(f"{name} accepts at most {limits.max_images} images per message")
    for image in images:
        if is_remote_url(image):
            if not limits.supports_url_images:
                raise ChatInputError(f"{name} does not accept image URLs; attach the file instead")
            continue
        if is_media_ref(image) or limits.max_image_size is None:
            continue
        _, raw = parse_data_url(image)
        if len(raw) > limits.max_image_size:
            raise ChatInputError(
                f"Image is too large for {name} "
                f"({len(raw) // 1024} KB, limit {limits.max_image_size // 1024} KB)"
            )


class ChatService:
    def __init__(
        self,
        memory: Optional[SemanticMemoryStore] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._memory = memory
        self._client = client
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def memory(self) -> SemanticMemoryStore:
        return self._memory or get_memory_store()

    def assembler(self, config: AppConfig) -> ContextAssembler:
        return ContextAssembler(self.memory, config.context)

    # ---- turn preparation ----

    async def _load(self, conversation_id: str) -> Conversation:
        conv = await get_conversation(conversation_id)
        if conv is None:
            raise ConversationNotFound(conversation_id)
        return conv

    async def _store_images(
        self, images: Iterable[str], provider: ProviderConfig, model: ProviderModel
    ) -> list[str]:
        images = [i for i in images if i]
        if not images:
            return []
        if not _supports_vision(provider, model):
            raise ChatInputError(
                f"Model '{model.display_name or model.model_id}' does not accept images"
            )
        _check_image_limits(images, provider)
        return [await store_media(image) for image in images]

    async def _begin(
        self,
        conv: Conversation,
        content: str,
        images: list[str],
        config: AppConfig,
        provider: ProviderConfig,
        model: ProviderModel,
    ) -> ChatTurn:
        message = Message(
            role="user", content=content, images=images, token_count=estimate_tokens(content)
        )
        append_message(conv, message)
        if conv.title == "New Chat" and content.strip():
            conv.title = make_title(content)
        conv.model = model.model_id
        # Persisted before assembly so the next turn reads it back.
        await save_conversation(conv)
        self.memory.schedule_store(conv.id, message)
        return ChatTurn(
            conversation=conv, user_message=message,
            provider=provider, model=model, config=config,
        )

    async def prepare_send(
        self,
        conversation_id: Optional[str],
        content: str,
        images: Iterable[str] = (),
    ) -> ChatTurn:
        images = list(images)
        if not content.strip() and not images:
            raise ChatInputError("Message is empty")
        config = get_config()
        provider, model = require_active_model(config)
        refs = await self._store_images(images, provider, model)
        if conversation_id:
            conv = await self._load(conversation_id)
        else:
            conv = await create_conversation(model=model.model_id)
        return await self._begin(conv, content, refs, config, provider, model)

    async def prepare_regenerate(self, conversation_id: str) -> ChatTurn:
        config = get_config()
        provider, model = require_active_model(config)
        conv = await self._load(conversation_id)
        last_user, removed = truncate_for_regenerate(conv)
        await self.memory.forget_messages(conv.id, [m.id for m in removed])
        return await self._begin(
            conv, last_user.content, list(last_user.images), config, provider, model
        )

    async def prepare_edit(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        images: Optional[Iterable[str]] = None,
    ) -> ChatTurn:
        config = get_config()
        provider, model = require_active_model(config)
        conv = await self._load(conversation_id)
        target, removed = truncate_for_edit(conv, message_id)
        refs = (
            list(target.images) if images is None
            else await self._store_images(images, provider, model)
        )
        if not content.strip() and not refs:
            raise ChatInputError("Message is empty")
        await self.memory.forget_messages(conv.id, [m.id for m in removed])
        return await self._begin(conv, content, refs, config, provider, model)

    async def navigate(
        self, conversation_id: str, message_id: str, branch_index: int
    ) -> Conversation:
        conv = await self._load(conversation_id)
        removed, added = navigate_branch(conv, message_id, branch_index)
        if removed or added:
            await save_conversation(conv)
            await self.memory.forget_messages(conv.id, [m.id for m in removed])
            self.memory.schedule_store_many(conv.id, added)
        return conv

    # ---- context ----

    async def build_context(self, conv: Conversation, config: AppConfig,
                            model: ProviderModel) -> ContextResult:
        return await self.assembler(config).assemble(
            conv.id,
            conv.messages,
            config.system_prompt,
            model.model_id,
            existing_summary=conv.summary,
        )

    async def preview_context(self, conversation_id: str) -> ContextResult:
        config = get_config()
        provider, model = require_active_model(config)
        conv = await self._load(conversation_id)
        return await self.build_context(conv, config, model)

    async def _wire_messages(self, result: ContextResult, vision: bool) -> list[WireMessage]:
        wire = []
        for block in result.blocks:
            images = await resolve_many(block.images) if vision and block.images else []
            wire.append(WireMessage(role=block.role, content=block.content, images=images))
        return wire

    # ---- streaming ----

    async def respond(self, turn: ChatTurn, session_id: str = "default") -> AsyncIterator[ChatEvent]:
        conv, config = turn.conversation, turn.config
        cancel_event = asyncio.Event()
        self._cancel_events[session_id] = cancel_event
        try:
            result = await self.build_context(conv, config, turn.model)
            logger.debug(
                "Context for %s: %d blocks, %d/%d tokens",
                conv.id, len(result.blocks), result.token_count, result.token_limit,
            )
            adapter = adapter_for(turn.provider)
            request = adapter.build_request(
                turn.provider,
                turn.model.model_id,
                await self._wire_messages(result, _supports_vision(turn.provider, turn.model)),
                GenerationParams.from_config(config),
            )
            stream = ResponseStream(
                request,
                adapter,
                provider_name(turn.provider),
                chunk_timeout=config.streaming.chunk_timeout,
                request_timeout=config.streaming.request_timeout,
                cancel_event=cancel_event,
                client=self._client,
            )
            try:
                async for chunk in stream.chunks():
                    yield ChatEvent(type="notice" if chunk.notice else "token", content=chunk.text)
            except ChatStreamError as e:
                logger.info("Turn in %s failed: %s", conv.id, e)
                yield ChatEvent(
                    type="error", content=str(e), category=e.category, conversation_id=conv.id
                )
                return
        finally:
            if self._cancel_events.get(session_id) is cancel_event:
                self._cancel_events.pop(session_id, None)

        assistant_id = None
        if stream.content:
            assistant = Message(
                role="assistant",
                content=stream.content,
                token_count=estimate_tokens(stream.content),
            )
            # Reload: a background summary may have updated the record meanwhile.
            latest = await get_conversation(conv.id) or conv
            append_message(latest, assistant)
            await save_conversation(latest)
            self.memory.schedule_store(latest.id, assistant)
            assistant_id = assistant.id

            if result.needs_summarization and trigger_summary_generation(
                latest.id, result.messages_pending_summarization, config, self._client
            ):
                yield ChatEvent(type="summarizing", conversation_id=latest.id)

        if stream.cancelled:
            reason = "cancelled"
        elif stream.state == StreamState.STALLED_RECOVERED:
            reason = "stalled"
        else:
            reason = "complete"
        yield ChatEvent(
            type="done", reason=reason, conversation_id=conv.id, message_id=assistant_id
        )

    def stop(self, session_id: str = "default") -> bool:
        event = self._cancel_events.get(session_id)
        if event is None:
            return False
        event.set()
        return True


_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    global _service
    if _service is None:
        _service = ChatService()
    return _service


def set_chat_service(service: Optional[ChatService]) -> None:
    global _service
    _service = service
