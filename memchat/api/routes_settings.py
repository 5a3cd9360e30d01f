from fastapi import APIRouter

from ..config import AppConfig, get_config, update_config
from ..memory.semantic import get_memory_store

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def get_settings():
    config = get_config()
    return config.model_dump()


@router.put("")
async def update_settings(config: AppConfig):
    updated = update_config(config)
    memory = get_memory_store()
    if memory.enabled != updated.memory.enabled:
        memory.set_enabled(updated.memory.enabled, persist=False)
    return updated.model_dump()
