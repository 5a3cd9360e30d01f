import pytest

from memchat.conversation import storage as conv_storage
from memchat.conversation.models import Message
from memchat.conversation.storage import make_title
from memchat.media import media_stats, resolve_media, store_media
from memchat.memory.models import ConversationSummaryRecord

PNG = "data:image/png;base64,iVBORw0KGgo="


def test_make_title():
    assert make_title("Hello there") == "Hello there"
    assert make_title("line one\nline   two") == "line one line two"
    long = "a" * 60
    assert make_title(long) == "a" * 40 + "..."
    assert make_title("   ") == "New Chat"


@pytest.mark.asyncio
async def test_crud_and_listing(storage, memory):
    first = await conv_storage.create_conversation(model="gpt-4o")
    second = await conv_storage.create_conversation(title="Second")
    first.messages.append(Message(role="user", content="What is the preview?"))
    await conv_storage.save_conversation(first)

    items = await conv_storage.list_conversations()
    assert [i.id for i in items] == [first.id, second.id]
    assert items[0].preview == "What is the preview?"
    assert items[0].message_count == 1

    renamed = await conv_storage.rename_conversation(second.id, "Renamed")
    assert renamed.title == "Renamed"
    assert await conv_storage.rename_conversation("missing", "x") is None

    loaded = await conv_storage.get_conversation(first.id)
    assert loaded.messages[0].content == "What is the preview?"
    assert await conv_storage.get_conversation("missing") is None


@pytest.mark.asyncio
async def test_folders(storage, memory):
    folder = await conv_storage.create_folder("Work")
    conv = await conv_storage.create_conversation(folder_id=folder.id)
    other = await conv_storage.create_conversation()
    await conv_storage.move_to_folder(other.id, folder.id)

    assert [f.name for f in await conv_storage.list_folders()] == ["Work"]
    assert (await conv_storage.rename_folder(folder.id, "Job")).name == "Job"

    assert await conv_storage.delete_folder(folder.id) is True
    assert await conv_storage.list_folders() == []
    assert (await conv_storage.get_conversation(conv.id)).folder_id is None
    assert (await conv_storage.get_conversation(other.id)).folder_id is None
    assert await conv_storage.delete_folder(folder.id) is False


@pytest.mark.asyncio
async def test_delete_cascades_to_memory_and_orphaned_media(storage, memory):
    shared = await store_media(PNG)
    own = await store_media("data:image/jpeg;base64,/9j/4AAQSkZJRg==")
    conv = await conv_storage.create_conversation()
    conv.messages.append(
        Message(role="user", content="Two pictures for you here", images=[shared, own])
    )
    await conv_storage.save_conversation(conv)
    keeper = await conv_storage.create_conversation()
    keeper.messages.append(Message(role="user", content="Same picture", images=[shared]))
    await conv_storage.save_conversation(keeper)

    await memory.store(conv.id, conv.messages[0])
    await memory.save_summary(ConversationSummaryRecord(conversation_id=conv.id, summary="s"))

    assert await conv_storage.delete_conversation(conv.id) is True

    assert await conv_storage.get_conversation(conv.id) is None
    assert await memory.get_summary(conv.id) is None
    assert (await memory.get_collection(conv.id)).records == []
    assert await memory.retrieve(conv.id, "two pictures") == []
    assert await resolve_media(own) is None
    assert await resolve_media(shared) == PNG
    assert await conv_storage.delete_conversation(conv.id) is False


@pytest.mark.asyncio
async def test_clear_all_data(storage, memory):
    await conv_storage.create_conversation()
    await store_media(PNG)
    await conv_storage.clear_all_data()
    assert await conv_storage.list_conversations() == []
    assert (await media_stats()).count == 0
