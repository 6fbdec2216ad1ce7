"""Streaming chat transport.

Opens one streamed ``POST /chat`` request and turns the server-sent ``data:``
lines into ``StreamChunk`` events. Every stream ends with exactly one
``DoneEvent`` or ``ErrorEvent`` unless the caller cancels it first, in which
case it simply stops producing events. The transport never retries.
"""

import json
from typing import AsyncIterator, Optional

import httpx
import structlog

from .. import metrics
from ..domain.errors import AuthenticationError
from ..domain.models import ChatRequest, ChunkEvent, DoneEvent, ErrorEvent, StreamChunk
from .http import ApiClient, extract_error_detail

logger = structlog.get_logger()

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def data_payload(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def decode_event(data: str, index: int) -> Optional[StreamChunk]:
    """Decode one event payload; None means there is nothing to emit."""
    try:
        payload = json.loads(data)
    except ValueError:
        # Plain-text chunk
        if data.strip():
            return ChunkEvent(content=data, index=index)
        return None

    if isinstance(payload, str):
        if not payload:
            return None
        return ChunkEvent(content=payload, index=index)

    if isinstance(payload, dict):
        kind = payload.get("type")
        if kind == "error":
            return ErrorEvent(error=str(payload.get("error") or "Stream failed"))
        if kind == "done":
            return DoneEvent(metadata=payload.get("metadata"))
        content = payload.get("content")
        if isinstance(content, str):
            if not content:
                return None
            return ChunkEvent(content=content, index=index)

    return ErrorEvent(error="Malformed stream event")


class ChatStream:
    """Async iterator over the events of one chat stream.

    Usage:
        stream = await transport.open_stream(request)
        async for event in stream:
            ...
        # or, from another task:
        stream.cancel()
    """

    def __init__(
        self,
        conversation_id: str,
        response: Optional[httpx.Response] = None,
        error: Optional[str] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._response = response
        self._error = error
        self._cancelled = False
        self._iterator: Optional[AsyncIterator[StreamChunk]] = None
        self.terminal: Optional[StreamChunk] = None
        self.chunk_count = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    def cancel(self) -> None:
        """Stop producing events; checked between reads."""
        if self._cancelled or self.finished:
            return
        self._cancelled = True
        metrics.STREAMS_CANCELLED.inc()
        logger.info("stream_cancelled", conversation_id=self.conversation_id, chunks=self.chunk_count)

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._iterator is None:
            self._iterator = self._events()
        return self._iterator

    async def aclose(self) -> None:
        """Release the underlying connection."""
        if self._iterator is not None:
            await self._iterator.aclose()
        if self._response is not None:
            await self._response.aclose()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _finish(self, event: StreamChunk) -> StreamChunk:
        self.terminal = event
        if isinstance(event, ErrorEvent):
            metrics.STREAMS_FAILED.inc()
            logger.warning("stream_failed", conversation_id=self.conversation_id, error=event.error)
        else:
            logger.info("stream_completed", conversation_id=self.conversation_id, chunks=self.chunk_count)
        return event

    async def _events(self) -> AsyncIterator[StreamChunk]:
        if self._response is None:
            yield self._finish(ErrorEvent(error=self._error or "Stream not available"))
            return

        try:
            async for line in self._response.aiter_lines():
                if self._cancelled:
                    return
                data = data_payload(line)
                if data is None:
                    continue
                if data.strip() == DONE_SENTINEL:
                    yield self._finish(DoneEvent())
                    return

                event = decode_event(data, self.chunk_count)
                if event is None:
                    continue
                if isinstance(event, ChunkEvent):
                    self.chunk_count += 1
                    yield event
                    if self._cancelled:
                        return
                    continue
                yield self._finish(event)
                return

            if self._cancelled:
                return
            if self.chunk_count:
                yield self._finish(DoneEvent())
            else:
                yield self._finish(ErrorEvent(error="Empty response"))
        except httpx.HTTPError as e:
            logger.error("stream_read_failed", conversation_id=self.conversation_id, error=str(e))
            yield self._finish(ErrorEvent(error=str(e) or "Streaming failed"))
        finally:
            await self._response.aclose()


class StreamTransport:
    """Opens chat streams through an API client's connection pool."""

    def __init__(self, api: ApiClient, path: str = "/chat") -> None:
        self._api = api
        self._path = path

    async def open_stream(self, request: ChatRequest) -> ChatStream:
        """Send the streamed chat request.

        Raises AuthenticationError before any event when the backend answers
        401. Other failures are delivered as the stream's single ErrorEvent.
        """
        payload = request.model_dump(mode="json", exclude_none=True)
        payload["stream"] = True
        http_request = self._api.http.build_request(
            "POST",
            self._path,
            json=payload,
            headers={**self._api.auth_headers(), "Accept": "text/event-stream"},
        )

        metrics.STREAMS_STARTED.inc()
        logger.info("stream_started", conversation_id=request.conversation_id, message_length=len(request.message))
        try:
            response = await self._api.http.send(http_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("stream_request_failed", conversation_id=request.conversation_id, error=str(e))
            return ChatStream(request.conversation_id, error=str(e) or "Streaming failed")

        if response.status_code == 401:
            await response.aclose()
            logger.warning("stream_unauthorized", conversation_id=request.conversation_id)
            raise AuthenticationError("Authentication required")

        if response.is_error:
            detail = "Stream request failed"
            try:
                await response.aread()
                detail = extract_error_detail(response, detail)
            except httpx.HTTPError as e:
                logger.warning("stream_error_body_unreadable", conversation_id=request.conversation_id, error=str(e))
            finally:
                await response.aclose()
            logger.error(
                "stream_error_response",
                conversation_id=request.conversation_id,
                status_code=response.status_code,
                detail=detail,
            )
            return ChatStream(request.conversation_id, error=detail)

        return ChatStream(request.conversation_id, response=response)
