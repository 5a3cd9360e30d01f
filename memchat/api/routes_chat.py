import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..chat import ChatEvent, ChatTurn, get_chat_service
from ..config import get_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


class SendRequest(BaseModel):
    content: str = ""
    images: list[str] = []  # data URLs or http(s) URLs
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None


class RegenerateRequest(BaseModel):
    conversation_id: str
    session_id: Optional[str] = None


class EditRequest(BaseModel):
    conversation_id: str
    message_id: str
    content: str
    images: Optional[list[str]] = None
    session_id: Optional[str] = None


class StopRequest(BaseModel):
    session_id: Optional[str] = None


class ContextRequest(BaseModel):
    conversation_id: str


def _sse(event: ChatEvent) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"


async def _event_stream(turn: ChatTurn, session_id: str) -> AsyncIterator[str]:
    yield _sse(ChatEvent(
        type="start",
        conversation_id=turn.conversation.id,
        message_id=turn.user_message.id,
    ))
    try:
        async for event in get_chat_service().respond(turn, session_id):
            yield _sse(event)
    except Exception as e:
        logger.error("Chat stream error: %s", e, exc_info=True)
        yield _sse(ChatEvent(type="error", content=str(e), conversation_id=turn.conversation.id))


def _streaming_response(turn: ChatTurn, session_id: Optional[str]) -> StreamingResponse:
    return StreamingResponse(
        _event_stream(turn, session_id or "default"),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/send")
async def send_message(req: SendRequest):
    turn = await get_chat_service().prepare_send(req.conversation_id, req.content, req.images)
    return _streaming_response(turn, req.session_id)


@router.post("/regenerate")
async def regenerate(req: RegenerateRequest):
    turn = await get_chat_service().prepare_regenerate(req.conversation_id)
    return _streaming_response(turn, req.session_id)


@router.post("/edit")
async def edit_message(req: EditRequest):
    turn = await get_chat_service().prepare_edit(
        req.conversation_id, req.message_id, req.content, req.images
    )
    return _streaming_response(turn, req.session_id)


@router.post("/stop")
async def stop_generation(req: StopRequest):
    stopped = get_chat_service().stop(req.session_id or "default")
    return {"status": "stopped" if stopped else "idle"}


@router.post("/context")
async def preview_context(req: ContextRequest):
    result = await get_chat_service().preview_context(req.conversation_id)
    return result.model_dump()


@router.get("/models")
async def list_models():
    config = get_config()
    models = []
    for provider in config.providers:
        for model in provider.models:
            models.append({
                "provider_id": provider.id,
                "provider_name": provider.name,
                "id": model.id,
                "model_id": model.model_id,
                "display_name": model.display_name or model.model_id,
                "is_vision_model": model.is_vision_model,
                "active": (
                    provider.id == config.active_provider_id
                    and model.id == config.active_model_id
                ),
            })
    return {"models": models}
