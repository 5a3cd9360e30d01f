import asyncio
import base64
import json

import httpx
import pytest

from conftest import mock_client, openai_delta, sse_body
from memchat import background
from memchat.chat import ChatService
from memchat.config import ProviderConfig, ProviderModel, get_config, update_config
from memchat.conversation import storage as conv_storage
from memchat.conversation.models import Message
from memchat.exceptions import ChatInputError, ConfigurationError, ConversationNotFound
from memchat.storage.base import RecordKind

PNG = "data:image/png;base64,iVBORw0KGgo="


class FakeProvider:
    """Answers streaming calls with *replies* in turn and summary calls with a fixed text."""

    def __init__(self, *replies, status=200):
        self.replies = list(replies)
        self.status = status
        self.requests = []
        self.summary_requests = []

    def __call__(self, request):
        body = json.loads(request.content)
        if not body.get("stream"):
            self.summary_requests.append(body)
            return httpx.Response(200, json={"choices": [{"message": {"content": "Summary text"}}]})
        self.requests.append(body)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "upstream down"}})
        reply = self.replies.pop(0) if self.replies else "ok"
        return httpx.Response(200, content=sse_body(openai_delta(reply[:3]), openai_delta(reply[3:])))


async def _collect(service, turn, session_id="default"):
    return [event async for event in service.respond(turn, session_id)]


@pytest.fixture
def provider():
    return FakeProvider("Hello there!", "Second answer", "Third answer")


@pytest.fixture
def service(memory, app_config, provider):
    return ChatService(memory=memory, client=mock_client(provider))


@pytest.mark.asyncio
async def test_send_streams_and_persists(service, provider, memory):
    turn = await service.prepare_send(None, "What is the capital of France?")
    events = await _collect(service, turn)

    assert [e.type for e in events] == ["token", "token", "done"]
    assert "".join(e.content for e in events if e.type == "token") == "Hello there!"
    assert events[-1].reason == "complete"

    conv = await conv_storage.get_conversation(turn.conversation.id)
    assert conv.title == "What is the capital of France?"
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "What is the capital of France?"),
        ("assistant", "Hello there!"),
    ]
    assert conv.messages[1].parent_id == conv.messages[0].id
    assert events[-1].message_id == conv.messages[1].id

    sent = provider.requests[0]["messages"]
    assert sent[0] == {"role": "system", "content": "You are a helpful AI assistant."}
    assert sent[-1] == {"role": "user", "content": "What is the capital of France?"}

    await background.drain()
    collection = await memory.get_collection(conv.id)
    assert {r.message_id for r in collection.records} == {m.id for m in conv.messages}


@pytest.mark.asyncio
async def test_next_turn_sees_previous_reply(service, provider):
    turn = await service.prepare_send(None, "First question here")
    await _collect(service, turn)
    turn = await service.prepare_send(turn.conversation.id, "Follow-up question")
    await _collect(service, turn)

    sent = [(m["role"], m["content"]) for m in provider.requests[1]["messages"][1:]]
    assert sent == [
        ("user", "First question here"),
        ("assistant", "Hello there!"),
        ("user", "Follow-up question"),
    ]


@pytest.mark.asyncio
async def test_input_and_config_errors_never_reach_network(memory, provider, isolated_config):
    service = ChatService(memory=memory, client=mock_client(provider))
    with pytest.raises(ConfigurationError):
        await service.prepare_send(None, "hello")
    assert await conv_storage.list_conversations() == []

    with pytest.raises(ChatInputError):
        await service.prepare_send(None, "   ")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_unknown_conversation(service):
    with pytest.raises(ConversationNotFound):
        await service.prepare_send("nope", "hello there")


@pytest.mark.asyncio
async def test_failed_turn_keeps_user_message_only(memory, app_config):
    provider = FakeProvider(status=500)
    service = ChatService(memory=memory, client=mock_client(provider))
    turn = await service.prepare_send(None, "Will this fail?")

    events = await _collect(service, turn)

    assert [e.type for e in events] == ["error"]
    assert "server error" in events[0].content
    conv = await conv_storage.get_conversation(turn.conversation.id)
    assert [m.role for m in conv.messages] == ["user"]


@pytest.mark.asyncio
async def test_regenerate_replaces_reply_and_prunes_embeddings(service, memory):
    turn = await service.prepare_send(None, "Tell me something nice")
    await _collect(service, turn)
    await background.drain()
    first = await conv_storage.get_conversation(turn.conversation.id)

    regen = await service.prepare_regenerate(first.id)
    events = await _collect(service, regen)
    await background.drain()

    assert events[-1].type == "done"
    conv = await conv_storage.get_conversation(first.id)
    assert [m.content for m in conv.messages] == ["Tell me something nice", "Second answer"]
    assert conv.messages[0].id != first.messages[0].id
    assert (conv.messages[0].sibling_index, conv.messages[0].total_siblings) == (1, 2)
    assert {m.id for m in conv.branches} == {m.id for m in first.messages}

    collection = await memory.get_collection(conv.id)
    assert {r.message_id for r in collection.records} == {m.id for m in conv.messages}


@pytest.mark.asyncio
async def test_edit_and_navigate_back(service, memory):
    turn = await service.prepare_send(None, "Original question text")
    await _collect(service, turn)
    await background.drain()
    original = await conv_storage.get_conversation(turn.conversation.id)

    with pytest.raises(ChatInputError):
        await service.prepare_edit(original.id, original.messages[1].id, "not allowed")

    edit = await service.prepare_edit(original.id, original.messages[0].id, "Edited question text")
    await _collect(service, edit)
    await background.drain()
    edited = await conv_storage.get_conversation(original.id)
    assert [m.content for m in edited.messages] == ["Edited question text", "Second answer"]

    conv = await service.navigate(original.id, edited.messages[0].id, 0)
    assert [m.content for m in conv.messages] == ["Original question text", "Hello there!"]
    await background.drain()
    stored = await conv_storage.get_conversation(original.id)
    assert [m.id for m in stored.messages] == [m.id for m in original.messages]
    collection = await memory.get_collection(original.id)
    assert {r.message_id for r in collection.records} == {m.id for m in original.messages}


@pytest.mark.asyncio
async def test_images_require_vision_model(service, app_config, provider):
    turn = await service.prepare_send(None, "What is in this image?", [PNG])
    assert turn.user_message.images[0].startswith("media:")
    await _collect(service, turn)
    parts = provider.requests[0]["messages"][-1]["content"]
    assert parts[1]["image_url"]["url"] == PNG

    cfg = get_config().model_copy(deep=True)
    cfg.active_model_id = "gpt35"
    update_config(cfg)
    with pytest.raises(ChatInputError):
        await service.prepare_send(None, "And this one?", [PNG])


def _use_provider(base_url, name):
    cfg = get_config().model_copy(deep=True)
    cfg.providers.append(ProviderConfig(
        id="vision", name=name, base_url=base_url, api_key="key",
        models=[ProviderModel(id="v", model_id="vision-model", is_vision_model=True)],
    ))
    cfg.active_provider_id, cfg.active_model_id = "vision", "v"
    update_config(cfg)


@pytest.mark.asyncio
async def test_image_limits_follow_provider(service, app_config, storage):
    _use_provider("https://api.groq.com/openai/v1", "Groq")
    with pytest.raises(ChatInputError, match="at most 5"):
        await service.prepare_send(None, "Too many", [PNG] * 6)

    big = "data:image/png;base64," + base64.b64encode(b"\0" * (4 * 1024 * 1024 + 1)).decode()
    with pytest.raises(ChatInputError, match="too large"):
        await service.prepare_send(None, "Too big", [PNG, big])
    assert await storage.list_blobs() == []
    assert await conv_storage.list_conversations() == []

    turn = await service.prepare_send(None, "Fits", [PNG] * 5)
    assert len(turn.user_message.images) == 5


@pytest.mark.asyncio
async def test_local_provider_rejects_image_urls(service, app_config):
    _use_provider("http://localhost:11434/v1", "Ollama")
    with pytest.raises(ChatInputError, match="image URLs"):
        await service.prepare_send(None, "Look", ["https://example.com/cat.png"])


@pytest.mark.asyncio
async def test_stop_keeps_partial_reply(memory, app_config):
    class SlowStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield sse_body(openai_delta("Par"), done=False)
            await asyncio.sleep(5)
            yield sse_body(openai_delta("tial"))

    def handler(request):
        return httpx.Response(200, stream=SlowStream())

    service = ChatService(memory=memory, client=mock_client(handler))
    turn = await service.prepare_send(None, "Start a long answer")

    events = []
    async for event in service.respond(turn, "s1"):
        events.append(event)
        if event.type == "token":
            assert service.stop("s1") is True

    assert events[-1].type == "done"
    assert events[-1].reason == "cancelled"
    conv = await conv_storage.get_conversation(turn.conversation.id)
    assert conv.messages[-1].content == "Par"
    assert service.stop("s1") is False


@pytest.mark.asyncio
async def test_long_conversation_triggers_background_summary(service, provider, memory):
    conv = await conv_storage.create_conversation()
    for i in range(16):
        role = "user" if i % 2 == 0 else "assistant"
        conv.messages.append(Message(role=role, content=f"earlier message {i}"))
    await conv_storage.save_conversation(conv)

    turn = await service.prepare_send(conv.id, "One more question")
    events = await _collect(service, turn)
    await background.drain()

    assert [e.type for e in events][-2:] == ["summarizing", "done"]
    assert len(provider.summary_requests) == 1
    record = await memory.get_summary(conv.id)
    assert record.summary == "Summary text"
    stored = await conv_storage.get_conversation(conv.id)
    assert stored.summary == "Summary text"
    assert stored.summarized_up_to == 11
    assert [m.role for m in stored.messages[-2:]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_preview_context(service):
    turn = await service.prepare_send(None, "Preview this context")
    result = await service.preview_context(turn.conversation.id)
    assert result.blocks[-1].content == "Preview this context"
    assert result.token_count <= result.token_limit


@pytest.mark.asyncio
async def test_records_live_in_active_storage(service, storage):
    turn = await service.prepare_send(None, "Where is this stored?")
    await _collect(service, turn)
    assert await storage.list_ids(RecordKind.CONVERSATIONS) == [turn.conversation.id]
