import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import background
from .api.routes_chat import router as chat_router
from .api.routes_conversation import router as conversation_router
from .api.routes_folders import router as folders_router
from .api.routes_memory import router as memory_router
from .api.routes_settings import router as settings_router
from .api.routes_storage import router as storage_router
from .exceptions import (
    ChatInputError,
    ConfigurationError,
    ConversationNotFound,
    StorageAccessRevoked,
    StorageError,
)
from .storage.service import get_storage

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    if not await get_storage().init():
        logger.warning("Storage directory is not accessible; waiting for re-authorization")
    yield
    # Let pending embedding writes and summaries land before exiting.
    await background.drain(timeout=10)
    await background.cancel_all()


app = FastAPI(title="memchat", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",     # Vite dev server
        "http://127.0.0.1:5173",
        "null",                      # Electron file:// origin
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(ConfigurationError)
@app.exception_handler(ChatInputError)
async def bad_request_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConversationNotFound)
async def not_found_handler(request: Request, exc: ConversationNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StorageAccessRevoked)
async def access_revoked_handler(request: Request, exc: StorageAccessRevoked):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "needs_reauthorization": True},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.include_router(chat_router)
app.include_router(conversation_router)
app.include_router(folders_router)
app.include_router(memory_router)
app.include_router(storage_router)
app.include_router(settings_router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "storage": get_storage().active_type}
