import logging
from pathlib import Path

from fastapi import APIRouter
from pydantic import BaseModel

from ..conversation.storage import clear_all_data
from ..storage.service import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/storage", tags=["storage"])


class DirectoryRequest(BaseModel):
    path: str


@router.get("")
async def storage_status():
    return (await get_storage().status()).model_dump()


@router.post("/directory")
async def use_directory(req: DirectoryRequest):
    storage = get_storage()
    report = await storage.switch_to_directory(Path(req.path).expanduser())
    logger.info("Switched to directory storage at %s", req.path)
    return {"status": (await storage.status()).model_dump(), "migration": report.model_dump()}


@router.post("/kv")
async def use_kv():
    storage = get_storage()
    report = await storage.switch_to_kv()
    return {"status": (await storage.status()).model_dump(), "migration": report.model_dump()}


@router.post("/disconnect")
async def disconnect_directory():
    storage = get_storage()
    report = await storage.disconnect()
    return {"status": (await storage.status()).model_dump(), "migration": report.model_dump()}


@router.post("/reauthorize")
async def reauthorize():
    storage = get_storage()
    ok = await storage.reauthorize()
    return {"reauthorized": ok, "status": (await storage.status()).model_dump()}


@router.delete("")
async def clear_data():
    await clear_all_data()
    return {"status": "cleared"}
