from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..conversation import storage

router = APIRouter(prefix="/api/folders", tags=["folders"])


class FolderRequest(BaseModel):
    name: str


@router.get("")
async def list_folders():
    return {"folders": [f.model_dump() for f in await storage.list_folders()]}


@router.post("")
async def create_folder(req: FolderRequest):
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="Folder name is required")
    folder = await storage.create_folder(req.name.strip())
    return {"folder": folder.model_dump()}


@router.put("/{folder_id}")
async def rename_folder(folder_id: str, req: FolderRequest):
    folder = await storage.rename_folder(folder_id, req.name.strip())
    if not folder:
        raise HTTPException(status_code=404, detail="Folder not found")
    return {"folder": folder.model_dump()}


@router.delete("/{folder_id}")
async def delete_folder(folder_id: str):
    if await storage.delete_folder(folder_id):
        return {"status": "deleted"}
    raise HTTPException(status_code=404, detail="Folder not found")
