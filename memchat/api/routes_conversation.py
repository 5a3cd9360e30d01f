from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..chat import get_chat_service
from ..conversation import storage

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class CreateConversationRequest(BaseModel):
    title: str = ""
    model: str = ""
    folder_id: Optional[str] = None


class RenameConversationRequest(BaseModel):
    title: str


class MoveConversationRequest(BaseModel):
    folder_id: Optional[str] = None


class NavigateBranchRequest(BaseModel):
    message_id: str
    branch_index: int


@router.get("")
async def list_conversations():
    items = await storage.list_conversations()
    return {"conversations": [c.model_dump() for c in items]}


@router.post("")
async def create_conversation(req: CreateConversationRequest):
    if req.folder_id and await storage.get_folder(req.folder_id) is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    conv = await storage.create_conversation(
        title=req.title or "New Chat", model=req.model, folder_id=req.folder_id
    )
    return {"conversation": conv.model_dump()}


@router.get("/{conv_id}")
async def get_conversation(conv_id: str):
    conv = await storage.get_conversation(conv_id)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": conv.model_dump()}


@router.put("/{conv_id}")
async def rename_conversation(conv_id: str, req: RenameConversationRequest):
    item = await storage.rename_conversation(conv_id, req.title)
    if not item:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": item.model_dump()}


@router.put("/{conv_id}/folder")
async def move_conversation(conv_id: str, req: MoveConversationRequest):
    if req.folder_id and await storage.get_folder(req.folder_id) is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    item = await storage.move_to_folder(conv_id, req.folder_id)
    if not item:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": item.model_dump()}


@router.post("/{conv_id}/branch")
async def navigate_branch(conv_id: str, req: NavigateBranchRequest):
    conv = await get_chat_service().navigate(conv_id, req.message_id, req.branch_index)
    return {"conversation": conv.model_dump()}


@router.delete("/{conv_id}")
async def delete_conversation(conv_id: str):
    if await storage.delete_conversation(conv_id):
        return {"status": "deleted"}
    raise HTTPException(status_code=404, detail="Conversation not found")
