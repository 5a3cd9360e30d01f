"""Content-addressed media store.

Messages carry lightweight ``media:<sha256>.<ext>`` references instead of
inline image data. Identical images share one blob. Blobs can be cleared
independently of the chat text; an unresolvable reference reads as
``None``.
"""

import base64
import binascii
import hashlib
import logging
import re
from typing import Iterable, Optional

from pydantic import BaseModel

from .exceptions import ChatInputError
from .storage.service import StorageService, get_storage

logger = logging.getLogger(__name__)

MEDIA_PREFIX = "media:"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.S)

_EXT_BY_MIME = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/svg+xml": "svg",
}
_MIME_BY_EXT = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}


class MediaStats(BaseModel):
    count: int = 0
    total_bytes: int = 0


def is_media_ref(value: str) -> bool:
    return value.startswith(MEDIA_PREFIX)


def is_remote_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def blob_name(ref: str) -> str:
    return ref[len(MEDIA_PREFIX):]


def parse_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a base64 data URL into ``(mime, raw bytes)``."""
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise ChatInputError("Image must be a base64 data URL")
    try:
        raw = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ChatInputError(f"Invalid base64 image data: {e}") from e
    return (match.group("mime") or "image/jpeg").lower(), raw


def to_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


async def store_media(data_url: str, storage: Optional[StorageService] = None) -> str:
    """Persist an image and return its reference (deduplicated by content)."""
    if is_media_ref(data_url) or is_remote_url(data_url):
        return data_url
    storage = storage or get_storage()
    mime, raw = parse_data_url(data_url)
    digest = hashlib.sha256(raw).hexdigest()
    name = f"{digest}.{_EXT_BY_MIME.get(mime, 'bin')}"
    if await storage.load_blob(name) is None:
        await storage.save_blob(name, raw)
        logger.debug("Stored media %s (%d bytes)", name, len(raw))
    return MEDIA_PREFIX + name


async def resolve_media(ref: str, storage: Optional[StorageService] = None) -> Optional[str]:
    """Turn a reference back into a data URL; ``None`` if the blob is gone."""
    if not is_media_ref(ref):
        return ref
    storage = storage or get_storage()
    name = blob_name(ref)
    data = await storage.load_blob(name)
    if data is None:
        logger.debug("Media %s could not be resolved", name)
        return None
    ext = name.rsplit(".", 1)[-1] if "." in name else ""
    return to_data_url(_MIME_BY_EXT.get(ext, "application/octet-stream"), data)


async def resolve_many(refs: Iterable[str], storage: Optional[StorageService] = None) -> list[str]:
    resolved = []
    for ref in refs:
        url = await resolve_media(ref, storage)
        if url:
            resolved.append(url)
    return resolved


async def delete_media(ref: str, storage: Optional[StorageService] = None) -> None:
    if is_media_ref(ref):
        await (storage or get_storage()).delete_blob(blob_name(ref))


async def media_stats(storage: Optional[StorageService] = None) -> MediaStats:
    storage = storage or get_storage()
    stats = MediaStats()
    for name in await storage.list_blobs():
        data = await storage.load_blob(name)
        if data is not None:
            stats.count += 1
            stats.total_bytes += len(data)
    return stats
