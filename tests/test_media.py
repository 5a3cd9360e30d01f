import base64
import hashlib

import pytest

from memchat.exceptions import ChatInputError
from memchat.media import (
    delete_media,
    media_stats,
    parse_data_url,
    resolve_many,
    resolve_media,
    store_media,
)

PNG = "data:image/png;base64,iVBORw0KGgo="
RAW = b"\x89PNG\r\n\x1a\n"


def test_parse_data_url():
    assert parse_data_url(PNG) == ("image/png", RAW)
    with pytest.raises(ChatInputError):
        parse_data_url("not a data url")


@pytest.mark.asyncio
async def test_store_is_content_addressed(storage):
    ref = await store_media(PNG)
    assert ref == f"media:{hashlib.sha256(RAW).hexdigest()}.png"
    assert await store_media(PNG) == ref
    assert await storage.list_blobs() == [ref[len("media:"):]]
    assert await resolve_media(ref) == PNG


@pytest.mark.asyncio
async def test_urls_and_refs_pass_through(storage):
    url = "https://example.com/cat.png"
    assert await store_media(url) == url
    assert await resolve_media(url) == url
    ref = await store_media(PNG)
    assert await store_media(ref) == ref


@pytest.mark.asyncio
async def test_cleared_media_resolves_to_none(storage):
    ref = await store_media(PNG)
    await delete_media(ref)
    assert await resolve_media(ref) is None
    assert await resolve_many([ref, "https://example.com/a.png"]) == ["https://example.com/a.png"]


@pytest.mark.asyncio
async def test_media_stats(storage):
    await store_media(PNG)
    await store_media("data:image/gif;base64,R0lGODlhAQABAAAAACw=")
    stats = await media_stats()
    assert stats.count == 2
    assert stats.total_bytes == len(RAW) + len(base64.b64decode("R0lGODlhAQABAAAAACw="))
