"""
Streaming Progress Reporter

One-way event channel between a running pipeline and the HTTP response.
Events are JSON objects ``{"type": ..., "content": ...}`` delivered in the
order the pipeline emits them and framed as server-sent events:

    data: {"type": "step", "content": "正在搜尋文件..."}

``completion`` and ``error`` are terminal: once one has been emitted, later
events are dropped. The pipeline runs as its own task; if the consumer goes
away (client disconnect) the task is cancelled.
"""

import json
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .prompts import MESSAGES

logger = logging.getLogger(__name__)

CHUNK_TYPES = frozenset({"chunk", "answer_chunk", "response_chunk"})
TERMINAL_TYPES = frozenset({"completion", "error"})

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_CLOSED = object()


def format_sse(event: dict) -> str:
    """Format one event as a server-sent event frame."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class ProgressReporter:
    """Ordered event channel for one request."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminated = False
        self._closed = False
        self.history: list[dict] = []

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: str, content) -> None:
        if self._closed or self._terminated:
            logger.debug(f"Dropping {event_type} event after stream end")
            return
        event = {"type": event_type, "content": content}
        self.history.append(event)
        self._queue.put_nowait(event)
        if event_type in TERMINAL_TYPES:
            self._terminated = True

    def step(self, content: str) -> None:
        self.emit("step", content)

    def chunk(self, content: str, kind: str = "chunk") -> None:
        if kind not in CHUNK_TYPES:
            raise ValueError(f"Unknown chunk type: {kind}")
        self.emit(kind, content)

    def sources(self, chunks: list) -> None:
        self.emit("sources", [c.to_dict() for c in chunks])

    def tokens(self, tokens_used: int, remaining_tokens: int) -> None:
        self.emit("tokens", {"tokens_used": tokens_used, "remaining_tokens": remaining_tokens})

    def completion(
        self,
        tokens_used: int,
        remaining_tokens: int,
        conversation_id: Optional[str] = None,
    ) -> None:
        self.emit("completion", {
            "conversationId": conversation_id,
            "tokens_used": tokens_used,
            "remaining_tokens": remaining_tokens,
        })

    def error(self, message: str) -> None:
        """Emit the single user-safe error event for this stream."""
        self.emit("error", message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[dict]:
        """Yield events until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


async def run_with_reporter(reporter: ProgressReporter, pipeline: Awaitable) -> None:
    """Await a pipeline, turning any escaped error into one error event, then close."""
    try:
        await pipeline
    except asyncio.CancelledError:
        logger.info("Pipeline cancelled before completion (client disconnected)")
        raise
    except Exception as e:
        logger.error(f"Unhandled pipeline error: {type(e).__name__}: {e}")
        reporter.error(MESSAGES["ai_failed"])
    finally:
        reporter.close()


async def sse_stream(
    reporter: ProgressReporter,
    start_pipeline: Callable[[], Awaitable],
) -> AsyncIterator[str]:
    """
    Run the pipeline as a task and yield its events as SSE frames.

    ``start_pipeline`` is called only when the stream is first pulled, so a
    response that is never consumed never creates the pipeline coroutine.
    Closing the generator (the client went away) cancels the pipeline task so
    no further model calls are issued for an undeliverable response.
    """
    task = asyncio.create_task(run_with_reporter(reporter, start_pipeline()))
    try:
        async for event in reporter.events():
            yield format_sse(event)
    finally:
        if not task.done():
            task.cancel()
