import asyncio
import json

import httpx
import pytest

from conftest import mock_client, openai_delta, sse_body
from memchat.exceptions import ErrorCategory
from memchat.llm.base import ProviderRequest
from memchat.llm.provider_utils import ProviderDialect
from memchat.llm.registry import get_adapter
from memchat.llm.streaming import (
    STALL_NOTICE,
    TRUNCATED_NOTICE,
    ResponseStream,
    StreamState,
    complete,
)

REQUEST = ProviderRequest(
    url="https://api.example.com/v1/chat/completions",
    headers={"Authorization": "Bearer k"},
    body={"model": "m", "messages": [], "stream": True},
)


class ScriptedStream(httpx.AsyncByteStream):
    """Yields *chunks*, then optionally goes silent, then optionally pings forever."""

    def __init__(self, chunks, stall=None, ping_every=None):
        self.chunks = chunks
        self.stall = stall
        self.ping_every = ping_every

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.stall is not None:
            await asyncio.sleep(self.stall)
        while self.ping_every is not None:
            await asyncio.sleep(self.ping_every)
            yield b": ping\n\n"


class Recorder:
    def __init__(self, cancel_after=None, cancel_event=None):
        self.chunks = []
        self.completed = 0
        self.errors = []
        self.cancel_after = cancel_after
        self.cancel_event = cancel_event

    def on_chunk(self, text):
        self.chunks.append(text)
        if self.cancel_after is not None and len(self.chunks) >= self.cancel_after:
            self.cancel_event.set()

    async def on_complete(self):
        self.completed += 1

    def on_error(self, error):
        self.errors.append(error)


def _stream(handler, **kwargs):
    kwargs.setdefault("chunk_timeout", 5.0)
    kwargs.setdefault("request_timeout", 10.0)
    return ResponseStream(
        REQUEST,
        get_adapter(ProviderDialect.OPENAI_COMPATIBLE),
        "Example",
        client=mock_client(handler),
        **kwargs,
    )


async def _run(stream, recorder=None):
    recorder = recorder or Recorder()
    result = await stream.run(recorder.on_chunk, recorder.on_complete, recorder.on_error)
    return recorder, result


@pytest.mark.asyncio
async def test_two_chunks_then_done():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, content=sse_body(openai_delta("Hel"), openai_delta("lo")))

    recorder, result = await _run(_stream(handler))

    assert recorder.chunks == ["Hel", "lo"]
    assert recorder.completed == 1
    assert recorder.errors == []
    assert result.state == StreamState.COMPLETED
    assert result.content == "Hello"
    assert seen[0]["stream"] is True


@pytest.mark.asyncio
async def test_lines_split_across_reads_and_malformed_lines():
    body = sse_body(openai_delta("Hel"), openai_delta("lo"))
    cut = body.index(b"Hel") + 2
    chunks = [b"data: {broken json\n\n", b": keep-alive\n\n", body[:cut], body[cut:]]

    def handler(request):
        return httpx.Response(200, stream=ScriptedStream(chunks))

    recorder, result = await _run(_stream(handler))

    assert "".join(recorder.chunks) == "Hello"
    assert recorder.completed == 1
    assert result.state == StreamState.COMPLETED


@pytest.mark.asyncio
async def test_stall_after_content_recovers_with_notice():
    def handler(request):
        return httpx.Response(
            200,
            stream=ScriptedStream([sse_body(openai_delta("Hel"), done=False)], stall=5),
        )

    recorder, result = await _run(_stream(handler, chunk_timeout=0.05))

    assert recorder.chunks == ["Hel", STALL_NOTICE]
    assert recorder.completed == 1
    assert recorder.errors == []
    assert result.state == StreamState.STALLED_RECOVERED
    assert result.content == "Hel" + STALL_NOTICE


@pytest.mark.asyncio
async def test_stall_before_content_fails():
    def handler(request):
        return httpx.Response(200, stream=ScriptedStream([], stall=5))

    recorder, result = await _run(_stream(handler, chunk_timeout=0.05))

    assert recorder.completed == 0
    assert [e.category for e in recorder.errors] == [ErrorCategory.STALLED]
    assert result.state == StreamState.FAILED


@pytest.mark.asyncio
async def test_done_without_content_is_an_error():
    def handler(request):
        return httpx.Response(200, content=sse_body())

    recorder, result = await _run(_stream(handler))

    assert recorder.completed == 0
    assert recorder.chunks == []
    assert [e.category for e in recorder.errors] == [ErrorCategory.EMPTY_RESPONSE]
    assert result.state == StreamState.FAILED


@pytest.mark.asyncio
async def test_overall_timeout_is_not_reset_by_chunks():
    def handler(request):
        return httpx.Response(
            200,
            stream=ScriptedStream(
                [sse_body(openai_delta("partial"), done=False)], ping_every=0.02
            ),
        )

    recorder, result = await _run(_stream(handler, chunk_timeout=0.1, request_timeout=0.3))

    assert recorder.chunks == ["partial"]
    assert [e.category for e in recorder.errors] == [ErrorCategory.TIMEOUT]
    assert result.state == StreamState.FAILED


@pytest.mark.asyncio
async def test_caller_cancellation_completes_with_partial_text():
    cancel = asyncio.Event()

    def handler(request):
        return httpx.Response(
            200,
            stream=ScriptedStream([sse_body(openai_delta("Hel"), done=False)], stall=5),
        )

    recorder = Recorder(cancel_after=1, cancel_event=cancel)
    recorder, result = await _run(_stream(handler, cancel_event=cancel), recorder)

    assert recorder.chunks == ["Hel"]
    assert recorder.completed == 1
    assert result.cancelled is True
    assert result.state == StreamState.COMPLETED
    assert result.content == "Hel"


@pytest.mark.asyncio
async def test_length_finish_appends_notice():
    def handler(request):
        return httpx.Response(
            200, content=sse_body(openai_delta("cut"), openai_delta("", finish_reason="length"))
        )

    recorder, _ = await _run(_stream(handler))
    assert recorder.chunks == ["cut", TRUNCATED_NOTICE]


@pytest.mark.asyncio
async def test_http_error_is_mapped():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    recorder, result = await _run(_stream(handler))

    assert [e.category for e in recorder.errors] == [ErrorCategory.AUTHENTICATION]
    assert result.error.startswith("Authentication failed for Example")


@pytest.mark.asyncio
async def test_connection_failure_is_mapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    recorder, _ = await _run(_stream(handler))

    assert [e.category for e in recorder.errors] == [ErrorCategory.CONNECTION]
    assert "check your internet connection" in str(recorder.errors[0])


@pytest.mark.asyncio
async def test_in_band_error_event_fails_the_stream():
    def handler(request):
        return httpx.Response(
            200, content=sse_body(openai_delta("a"), {"error": {"message": "overloaded"}})
        )

    recorder, result = await _run(_stream(handler))

    assert recorder.chunks == ["a"]
    assert [str(e) for e in recorder.errors] == ["overloaded"]
    assert result.category == ErrorCategory.STREAM


@pytest.mark.asyncio
async def test_complete_returns_text():
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": " summary "}}]})

    text = await complete(
        REQUEST, get_adapter(ProviderDialect.OPENAI_COMPATIBLE), "Example",
        timeout=5, client=mock_client(handler),
    )
    assert text == " summary "


@pytest.mark.asyncio
async def test_complete_maps_errors():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    from memchat.exceptions import ChatStreamError

    with pytest.raises(ChatStreamError) as excinfo:
        await complete(
            REQUEST, get_adapter(ProviderDialect.OPENAI_COMPATIBLE), "Example",
            timeout=5, client=mock_client(handler),
        )
    assert excinfo.value.category == ErrorCategory.RATE_LIMIT
