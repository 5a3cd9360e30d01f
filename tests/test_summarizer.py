import json

import httpx
import pytest

from conftest import mock_client
from memchat import background
from memchat.conversation import storage as conv_storage
from memchat.conversation.models import Message
from memchat.conversation.summarizer import (
    create_summarization_prompt,
    generate_summary,
    summarization_backlog,
    trigger_summary_generation,
)
from memchat.exceptions import ConfigurationError


def _messages(n):
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message number {i}")
        for i in range(n)
    ]


def _completion_handler(seen, text="A concise summary."):
    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})

    return handler


def test_backlog_threshold():
    assert summarization_backlog(_messages(16), has_summary=False) == []
    backlog = summarization_backlog(_messages(17), has_summary=False)
    assert [m.content for m in backlog] == [f"message number {i}" for i in range(11)]
    assert summarization_backlog(_messages(30), has_summary=True) == []
    assert summarization_backlog(_messages(3), has_summary=False) == []


def test_prompt_variants():
    messages = [Message(role="user", content="hi"), Message(role="assistant", content="hello")]
    prompt = create_summarization_prompt(messages)
    assert "Keep under 1500 words" in prompt
    assert "User: hi\n\nAssistant: hello\n\n" in prompt
    assert prompt.endswith("Summary:")

    updated = create_summarization_prompt(messages, "Earlier we met.")
    assert "Previous summary:\nEarlier we met." in updated
    assert updated.endswith("Updated summary:")


@pytest.mark.asyncio
async def test_generate_summary_saves_record_and_watermark(memory, app_config):
    conv = await conv_storage.create_conversation()
    conv.messages = _messages(20)
    await conv_storage.save_conversation(conv)
    seen = []

    record = await generate_summary(
        conv.id, conv.messages[:14], client=mock_client(_completion_handler(seen))
    )

    assert record.summary == "A concise summary."
    assert record.summarized_up_to_timestamp == conv.messages[13].timestamp
    assert record.token_count == 5
    assert (await memory.get_summary(conv.id)).summary == "A concise summary."

    stored = await conv_storage.get_conversation(conv.id)
    assert stored.summary == "A concise summary."
    assert stored.summarized_up_to == 14

    body = seen[0]
    assert "stream" not in body
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 2000
    assert body["messages"][0]["role"] == "system"
    assert "message number 13" in body["messages"][1]["content"]


@pytest.mark.asyncio
async def test_watermark_never_moves_backwards(memory, app_config):
    conv = await conv_storage.create_conversation()
    conv.messages = _messages(20)
    conv.summarized_up_to = 16
    await conv_storage.save_conversation(conv)

    await generate_summary(conv.id, conv.messages[:10], client=mock_client(_completion_handler([])))

    assert (await conv_storage.get_conversation(conv.id)).summarized_up_to == 16


@pytest.mark.asyncio
async def test_generate_summary_requires_model(memory):
    with pytest.raises(ConfigurationError):
        await generate_summary("c1", _messages(3))


@pytest.mark.asyncio
async def test_background_failure_is_logged_not_raised(memory, app_config, caplog):
    def handler(request):
        return httpx.Response(500, text="boom")

    trigger_summary_generation("c1", _messages(12), client=mock_client(handler))
    await background.drain()

    assert await memory.get_summary("c1") is None
    assert "summarize-c1" in caplog.text


@pytest.mark.asyncio
async def test_one_summary_run_per_conversation(memory, app_config):
    seen = []
    client = mock_client(_completion_handler(seen))

    assert trigger_summary_generation("c1", _messages(12), client=client) is True
    assert trigger_summary_generation("c1", _messages(14), client=client) is False
    assert trigger_summary_generation("c2", _messages(12), client=client) is True
    await background.drain()

    assert len(seen) == 2
    assert trigger_summary_generation("c1", _messages(12), client=client) is True
    await background.drain()
    assert len(seen) == 3
