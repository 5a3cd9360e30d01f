import logging
from datetime import datetime, timezone
from typing import Optional

from ..media import delete_media, is_media_ref
from ..memory.semantic import get_memory_store
from ..storage.base import RecordKind
from ..storage.service import get_storage
from .models import Conversation, ConversationListItem, Folder

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_title(content: str) -> str:
    """Title from the first user message: one line, 40 chars + '...'."""
    text = " ".join(content.split())
    if not text:
        return "New Chat"
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def _list_item(conv: Conversation) -> ConversationListItem:
    preview = ""
    for m in conv.messages:
        if m.role == "user":
            preview = m.content[:80]
            break
    return ConversationListItem(
        id=conv.id,
        title=conv.title,
        model=conv.model,
        message_count=len(conv.messages),
        preview=preview,
        folder_id=conv.folder_id,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
    )


# ---- CRUD ----

async def create_conversation(title: str = "New Chat", model: str = "",
                              folder_id: Optional[str] = None) -> Conversation:
    conv = Conversation(title=title, model=model, folder_id=folder_id)
    await save_conversation(conv, touch=False)
    return conv


async def get_conversation(conv_id: str) -> Optional[Conversation]:
    data = await get_storage().get(RecordKind.CONVERSATIONS, conv_id)
    if data is None:
        return None
    return Conversation(**data)


async def list_conversations() -> list[ConversationListItem]:
    """All conversations, newest activity first."""
    storage = get_storage()
    items = []
    for conv_id in await storage.list_ids(RecordKind.CONVERSATIONS):
        data = await storage.get(RecordKind.CONVERSATIONS, conv_id)
        if data is None:
            continue
        items.append(_list_item(Conversation(**data)))
    items.sort(key=lambda c: c.updated_at, reverse=True)
    return items


async def save_conversation(conv: Conversation, touch: bool = True) -> None:
    if touch:
        conv.updated_at = _now()
    await get_storage().set(RecordKind.CONVERSATIONS, conv.id, conv.model_dump())


async def rename_conversation(conv_id: str, title: str) -> Optional[ConversationListItem]:
    conv = await get_conversation(conv_id)
    if not conv:
        return None
    conv.title = title
    await save_conversation(conv)
    return _list_item(conv)


async def move_to_folder(conv_id: str, folder_id: Optional[str]) -> Optional[ConversationListItem]:
    conv = await get_conversation(conv_id)
    if not conv:
        return None
    conv.folder_id = folder_id
    await save_conversation(conv)
    return _list_item(conv)


def _media_refs(conv: Conversation) -> set[str]:
    return {
        ref
        for m in conv.messages + conv.branches
        for ref in m.images
        if is_media_ref(ref)
    }


async def delete_conversation(conv_id: str) -> bool:
    """Delete a conversation with its embeddings, summary and orphaned media."""
    storage = get_storage()
    conv = await get_conversation(conv_id)
    if conv is None:
        return False

    refs = _media_refs(conv)
    if refs:
        for other_id in await storage.list_ids(RecordKind.CONVERSATIONS):
            if other_id == conv_id or not refs:
                continue
            other = await get_conversation(other_id)
            if other:
                refs -= _media_refs(other)

    await storage.delete(RecordKind.CONVERSATIONS, conv_id)
    await get_memory_store().delete_all(conv_id)
    for ref in refs:
        await delete_media(ref)
    logger.info("Deleted conversation %s (%d media files)", conv_id, len(refs))
    return True


# ---- Folders ----

async def list_folders() -> list[Folder]:
    storage = get_storage()
    folders = []
    for folder_id in await storage.list_ids(RecordKind.FOLDERS):
        data = await storage.get(RecordKind.FOLDERS, folder_id)
        if data:
            folders.append(Folder(**data))
    folders.sort(key=lambda f: f.created_at)
    return folders


async def get_folder(folder_id: str) -> Optional[Folder]:
    data = await get_storage().get(RecordKind.FOLDERS, folder_id)
    return Folder(**data) if data else None


async def create_folder(name: str) -> Folder:
    folder = Folder(name=name)
    await get_storage().set(RecordKind.FOLDERS, folder.id, folder.model_dump())
    return folder


async def rename_folder(folder_id: str, name: str) -> Optional[Folder]:
    folder = await get_folder(folder_id)
    if not folder:
        return None
    folder.name = name
    await get_storage().set(RecordKind.FOLDERS, folder.id, folder.model_dump())
    return folder


async def delete_folder(folder_id: str) -> bool:
    """Delete a folder; its conversations are kept but unfiled."""
    storage = get_storage()
    if await get_folder(folder_id) is None:
        return False
    for conv_id in await storage.list_ids(RecordKind.CONVERSATIONS):
        conv = await get_conversation(conv_id)
        if conv and conv.folder_id == folder_id:
            conv.folder_id = None
            await save_conversation(conv)
    await storage.delete(RecordKind.FOLDERS, folder_id)
    return True


async def clear_all_data() -> None:
    await get_storage().clear_all()
