"""Streaming response ingestion.

A :class:`ResponseStream` drives one provider request through
``Idle -> Sending -> Streaming -> {Completed | Stalled-Recovered | Failed}``.

Two clocks run while streaming: the overall request timeout (started
before the request is sent and never reset) and the per-chunk stall
timeout (restarted after every successful read). Whichever fires first
decides the outcome:

* stall with partial output -> the partial text plus a visible notice,
  treated as a completed turn;
* stall before any output, or the overall timeout -> failure;
* caller cancellation -> completed, with whatever arrived so far.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel

from ..exceptions import ChatStreamError, ErrorCategory
from .base import DialectAdapter, ProviderRequest
from .errors import (
    EMPTY_RESPONSE,
    NOT_RESPONDING,
    REQUEST_TIMED_OUT,
    connection_error,
    decode_error_body,
    describe_api_error,
)

logger = logging.getLogger(__name__)

STALL_NOTICE = (
    "\n\n[Response stopped - the AI model stopped responding. "
    "The partial response is shown above.]"
)
TRUNCATED_NOTICE = (
    "\n\n[Response truncated - max tokens reached. Try adjusting max tokens in settings.]"
)
FILTERED_NOTICE = "\n\n[Response filtered due to content policy]"

DEFAULT_CHUNK_TIMEOUT = 30.0
DEFAULT_REQUEST_TIMEOUT = 120.0


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    STALLED_RECOVERED = "stalled_recovered"
    FAILED = "failed"


class StreamChunk(BaseModel):
    text: str
    notice: bool = False  # True for the bracketed status notices


class StreamResult(BaseModel):
    state: StreamState
    content: str = ""
    cancelled: bool = False
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None


class _ChunkTimeout(Exception):
    pass


class _OverallTimeout(Exception):
    pass


class _Cancelled(Exception):
    pass


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


async def _next_text(iterator: AsyncIterator[str]) -> Optional[str]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class ResponseStream:
    def __init__(
        self,
        request: ProviderRequest,
        adapter: DialectAdapter,
        provider_name: str,
        *,
        chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        cancel_event: Optional[asyncio.Event] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.request = request
        self.adapter = adapter
        self.provider_name = provider_name
        self.chunk_timeout = chunk_timeout
        self.request_timeout = request_timeout
        self.cancel_event = cancel_event
        self._client = client

        self.state = StreamState.IDLE
        self.cancelled = False
        self.finish_reason: Optional[str] = None
        self.error: Optional[ChatStreamError] = None
        self._parts: list[str] = []
        self._has_content = False
        self._done = False

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def has_content(self) -> bool:
        return self._has_content

    def result(self) -> StreamResult:
        return StreamResult(
            state=self.state,
            content=self.content,
            cancelled=self.cancelled,
            finish_reason=self.finish_reason,
            error=str(self.error) if self.error else None,
            category=self.error.category if self.error else None,
        )

    def _emit(self, text: str, notice: bool = False) -> StreamChunk:
        self._parts.append(text)
        return StreamChunk(text=text, notice=notice)

    def _fail(self, error: ChatStreamError) -> ChatStreamError:
        self.state = StreamState.FAILED
        self.error = error
        return error

    async def _race(self, awaitable: Awaitable[Any], timeout: float, on_timeout: Exception) -> Any:
        """Await *awaitable*, bounded by *timeout* and by caller cancellation."""
        task = asyncio.ensure_future(awaitable)
        waiters = {task}
        cancel_task = None
        if self.cancel_event is not None:
            cancel_task = asyncio.ensure_future(self.cancel_event.wait())
            waiters.add(cancel_task)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=max(timeout, 0), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            if not task.done():
                task.cancel()
                task.add_done_callback(_consume_result)
        if task in done:
            return task.result()
        if cancel_task is not None and cancel_task in done:
            raise _Cancelled()
        raise on_timeout

    def _handle_line(self, line: str) -> list[StreamChunk]:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return []  # blank keep-alives, ":" comments, "event:" lines
        data = line[5:].strip()
        if not data:
            return []
        if data == "[DONE]":
            self._done = True
            return []
        try:
            event = self.adapter.parse_event(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug("Skipping malformed stream line %r: %s", data[:80], e)
            return []
        if event is None:
            return []
        if event.error:
            raise ChatStreamError(event.error, ErrorCategory.STREAM)

        chunks = []
        if event.text:
            self._has_content = True
            chunks.append(self._emit(event.text))
        if event.finish_reason:
            self.finish_reason = event.finish_reason
            if event.finish_reason == "length":
                chunks.append(self._emit(TRUNCATED_NOTICE, notice=True))
            elif event.finish_reason == "content_filter":
                chunks.append(self._emit(FILTERED_NOTICE, notice=True))
        if event.done:
            self._done = True
        return chunks

    async def chunks(self) -> AsyncIterator[StreamChunk]:
        """Yield text deltas and notices in arrival order.

        Returns normally on completion, stall recovery and caller
        cancellation; raises :class:`ChatStreamError` on failure.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_timeout
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        response: Optional[httpx.Response] = None

        try:
            self.state = StreamState.SENDING
            request = client.build_request(
                "POST", self.request.url, headers=self.request.headers, json=self.request.body
            )
            response = await self._race(
                client.send(request, stream=True), deadline - loop.time(), _OverallTimeout()
            )
            if not response.is_success:
                body = await self._race(
                    response.aread(), deadline - loop.time(), _OverallTimeout()
                )
                raise describe_api_error(
                    response.status_code, decode_error_body(body), self.provider_name
                )

            self.state = StreamState.STREAMING
            iterator = response.aiter_text().__aiter__()
            buffer = ""
            while not self._done:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise _Cancelled()
                left = deadline - loop.time()
                if left <= 0:
                    raise _OverallTimeout()
                if left <= self.chunk_timeout:
                    text = await self._race(_next_text(iterator), left, _OverallTimeout())
                else:
                    text = await self._race(
                        _next_text(iterator), self.chunk_timeout, _ChunkTimeout()
                    )
                if text is None:
                    break
                buffer += text
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    for chunk in self._handle_line(line):
                        yield chunk
                    if self._done:
                        break

            if not self._done and buffer.strip():
                # Best effort on whatever the body ended with.
                for chunk in self._handle_line(buffer):
                    yield chunk

            if not self._has_content:
                raise ChatStreamError(EMPTY_RESPONSE, ErrorCategory.EMPTY_RESPONSE)
            self.state = StreamState.COMPLETED

        except _ChunkTimeout:
            if not self._has_content:
                raise self._fail(ChatStreamError(NOT_RESPONDING, ErrorCategory.STALLED))
            logger.warning("Stream from %s stalled; keeping partial response", self.provider_name)
            self.state = StreamState.STALLED_RECOVERED
            yield self._emit(STALL_NOTICE, notice=True)
        except _OverallTimeout:
            raise self._fail(ChatStreamError(REQUEST_TIMED_OUT, ErrorCategory.TIMEOUT))
        except _Cancelled:
            logger.info("Stream from %s cancelled by caller", self.provider_name)
            self.cancelled = True
            self.state = StreamState.COMPLETED
        except ChatStreamError as e:
            raise self._fail(e)
        except httpx.TimeoutException:
            raise self._fail(ChatStreamError(REQUEST_TIMED_OUT, ErrorCategory.TIMEOUT))
        except httpx.TransportError as e:
            logger.warning("Transport error talking to %s: %s", self.provider_name, e)
            raise self._fail(connection_error(self.provider_name))
        finally:
            if response is not None:
                await response.aclose()
            if owns_client:
                await client.aclose()

    async def run(
        self,
        on_chunk: Callable[[str], Any],
        on_complete: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[ChatStreamError], Any]] = None,
    ) -> StreamResult:
        """Callback flavour of :meth:`chunks`; never raises stream failures."""

        async def call(fn, *args):
            value = fn(*args)
            if inspect.isawaitable(value):
                await value

        try:
            async for chunk in self.chunks():
                await call(on_chunk, chunk.text)
        except ChatStreamError as e:
            if on_error is not None:
                await call(on_error, e)
        else:
            if on_complete is not None:
                await call(on_complete)
        return self.result()


async def complete(
    request: ProviderRequest,
    adapter: DialectAdapter,
    provider_name: str,
    timeout: float,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Non-streaming request; returns the reply text."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await asyncio.wait_for(
            client.post(request.url, headers=request.headers, json=request.body),
            timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        raise ChatStreamError(REQUEST_TIMED_OUT, ErrorCategory.TIMEOUT)
    except httpx.TransportError as e:
        logger.warning("Transport error talking to %s: %s", provider_name, e)
        raise connection_error(provider_name)
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        raise describe_api_error(
            response.status_code, decode_error_body(response.content), provider_name
        )
    try:
        return adapter.parse_completion(response.json())
    except ValueError as e:
        raise ChatStreamError(f"Invalid response from {provider_name}: {e}", ErrorCategory.STREAM)
