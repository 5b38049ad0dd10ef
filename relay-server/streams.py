"""Server-Sent Events transport for registry connections."""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Optional

from config import KEEPALIVE_INTERVAL, STREAM_QUEUE_SIZE
from registry import ConnectionRegistry

logger = logging.getLogger("relay.streams")

KEEPALIVE_FRAME = ": keepalive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamClosed(Exception):
    pass


def format_event(payload: str) -> str:
    """Frame a payload as one SSE event (one data: line per payload line)."""
    lines = "".join(f"data: {line}\n" for line in payload.split("\n"))
    return lines + "\n"


class EventStream:
    """One open /events connection.

    Frames are buffered in a bounded queue and drained by frames(), which
    the HTTP response iterates. A consumer that stops reading fills the
    queue, and the next emit fails instead of blocking the broadcaster.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        max_queue: int = STREAM_QUEUE_SIZE,
    ):
        self._registry = registry
        self._keepalive_interval = keepalive_interval
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_queue)
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closed = False
        self.connection_id: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> str:
        """Register with the registry and start the keep-alive timer."""
        self.connection_id = await self._registry.register(self.emit, self.close)
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        return self.connection_id

    async def emit(self, payload: str):
        self._put(format_event(payload))

    def _put(self, frame: str):
        if self._closed:
            raise StreamClosed(f"stream {self.connection_id} is closed")
        self._queue.put_nowait(frame)

    async def _keepalive_loop(self):
        try:
            while True:
                await asyncio.sleep(self._keepalive_interval)
                self._put(KEEPALIVE_FRAME)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning("Keep-alive for %s failed: %s", self.connection_id, e)
        await self.close()

    async def close(self):
        """Unregister, end frames(), and cancel the keep-alive timer. Idempotent."""
        if self._closed:
            return
        self._closed = True

        # Unregister before awaiting the keep-alive task
        if self.connection_id:
            await self._registry.unregister(self.connection_id)

        # Wake the consumer; pending frames are discarded if the queue is full
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)

        task = self._keepalive_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames in emission order until the stream closes."""
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            await self.close()
