"""
Server-Sent Events framing for streamed answers.

Frames are `event: <name>\\ndata: <json>\\n\\n`. A producer task pumps engine
events into a bounded queue; the consumer side interleaves heartbeat pings and
enforces the overall stream timeout. Every stream ends with exactly one
terminal frame (done or error).
"""
import asyncio
import json
import time
from contextlib import aclosing
from typing import Any, AsyncIterator

from tutor_chat.logging_config import get_logger
from tutor_chat.models import StreamEvent
from tutor_chat.rag.prompts import FALLBACK_MESSAGES

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering
}

TIMEOUT_MESSAGE = "timeout"


def now_ms() -> int:
    return int(time.time() * 1000)


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def render_event(event: StreamEvent) -> str:
    """SSE frame for one engine event."""
    if event.type == "content":
        return format_sse("content", {"content": event.text})
    if event.type == "done":
        payload = {
            "usage": {"inputTokens": event.input_tokens, "outputTokens": event.output_tokens},
            "timestamp": now_ms(),
        }
        payload.update(event.extra)
        return format_sse("done", payload)
    if event.type == "error":
        return format_sse("error", {"error": event.message})
    raise ValueError(f"Unknown stream event type: {event.type}")


class StreamMultiplexer:
    """Turns an engine event stream into SSE frames with heartbeats and a deadline."""

    def __init__(self, ping_interval: float = 30.0, timeout: float = 300.0, buffer_size: int = 32):
        if ping_interval <= 0 or timeout <= 0 or buffer_size <= 0:
            raise ValueError("ping_interval, timeout and buffer_size must be positive")
        self.ping_interval = ping_interval
        self.timeout = timeout
        self.buffer_size = buffer_size

    async def frames(self, events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
        """
        Yield SSE frames for `events`, which must be an async generator.

        On timeout an error frame is sent and the producer (and with it the
        provider call) is cancelled. Closing this generator does the same.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.buffer_size)
        pump = asyncio.create_task(self._pump(events, queue))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        next_ping = loop.time() + self.ping_interval

        try:
            while True:
                now = loop.time()
                if now >= deadline:
                    logger.warning(f"Stream timed out after {self.timeout:.0f}s, cancelling provider call")
                    yield render_event(StreamEvent.error(TIMEOUT_MESSAGE))
                    return
                if now >= next_ping:
                    yield format_sse("ping", {"timestamp": now_ms()})
                    next_ping = now + self.ping_interval
                    continue

                try:
                    event = await asyncio.wait_for(queue.get(), timeout=min(next_ping, deadline) - now)
                except asyncio.TimeoutError:
                    continue

                yield render_event(event)
                if event.is_terminal:
                    return
        finally:
            if not pump.done():
                pump.cancel()
            await asyncio.wait([pump])

    async def _pump(self, events: AsyncIterator[StreamEvent], queue: asyncio.Queue) -> None:
        try:
            async with aclosing(events) as source:
                async for event in source:
                    await queue.put(event)
                    if event.is_terminal:
                        return
            logger.error("Event stream ended without a terminal event")
            await queue.put(StreamEvent.error(FALLBACK_MESSAGES["technical_error"]))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error while streaming response: {e}", exc_info=True)
            await queue.put(StreamEvent.error(FALLBACK_MESSAGES["technical_error"]))
