from fastapi import APIRouter
from pydantic import BaseModel

from ..media import media_stats
from ..memory.semantic import get_memory_store

router = APIRouter(prefix="/api/memory", tags=["memory"])


class ToggleMemoryRequest(BaseModel):
    enabled: bool


def _status() -> dict:
    memory = get_memory_store()
    return {
        "enabled": memory.enabled,
        "model": memory.embedder.model_name,
        "model_loaded": memory.is_model_loaded(),
        "load_error": memory.embedder.load_error,
    }


@router.get("")
async def memory_status():
    return _status()


@router.put("")
async def toggle_memory(req: ToggleMemoryRequest):
    get_memory_store().set_enabled(req.enabled)
    return _status()


@router.post("/preload")
async def preload_model():
    await get_memory_store().preload()
    return _status()


@router.get("/media")
async def get_media_stats():
    return (await media_stats()).model_dump()


@router.get("/{conv_id}")
async def conversation_memory(conv_id: str):
    memory = get_memory_store()
    collection = await memory.get_collection(conv_id)
    summary = await memory.get_summary(conv_id)
    return {
        "conversation_id": conv_id,
        "embedding_count": len(collection.records),
        "summary": summary.model_dump() if summary else None,
    }


@router.delete("/{conv_id}")
async def delete_conversation_memory(conv_id: str):
    await get_memory_store().delete_all(conv_id)
    return {"status": "deleted"}
