"""SSE transport — the connection objects the registry writes to.

Learn: The registry never touches HTTP. It sees a Connection: something
with write(bytes), close(), and a close notification. QueueConnection is
the implementation behind the /stream endpoint:

    registry.broadcast → connection.write → asyncio.Queue → stream() → client

write() never waits. If a client stops reading, its queue fills up and the
next write raises SlowConsumerError, which the registry treats exactly like
a dead socket. There is no throttling and no retry.

QueueConnection lives on the event loop: write/close must be called from
the loop thread (route handlers, the relay listener).
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Optional, Protocol

import structlog

from channelcast.events.types import KEEPALIVE_FRAME

logger = structlog.get_logger()

CloseCallback = Callable[[], None]


class ConnectionClosedError(Exception):
    """Write attempted on a connection that has already closed."""


class SlowConsumerError(ConnectionClosedError):
    """The client's pending-frame queue is full."""


class Connection(Protocol):
    """What the registry needs from a transport connection."""

    @property
    def closed(self) -> bool: ...

    def write(self, data: bytes) -> None:
        """Send bytes. Raises on failure."""

    def close(self) -> None:
        """Terminate the connection (best-effort)."""

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback fired once when the connection goes away."""


def encode_event(message: dict[str, Any]) -> bytes:
    """Serialize a message as one SSE data frame."""
    payload = json.dumps(message, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"data: {payload}\n\n".encode("utf-8")


def make_client_id(ip: str, now_ms: Optional[int] = None) -> str:
    """Client ids are ``{ip}-{epoch_ms}``; the suffix is read back for diagnostics."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{ip}-{now_ms}"


class QueueConnection:
    """asyncio.Queue-backed SSE connection."""

    def __init__(self, max_pending: int = 256):
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=max_pending)
        self._closed = False
        self._notified = False
        self._callbacks: list[CloseCallback] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionClosedError("connection is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            raise SlowConsumerError(
                f"client has {self._queue.maxsize} frames pending"
            ) from None

    def close(self) -> None:
        """Stop the stream once already-queued frames are flushed."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader drains the queue, then sees the flag
            pass

    def on_close(self, callback: CloseCallback) -> None:
        if self._notified:
            callback()
            return
        self._callbacks.append(callback)

    def mark_closed(self) -> None:
        """Client went away (or stream ended): fire close callbacks once."""
        self.close()
        if self._notified:
            return
        self._notified = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("connection.close_callback_failed", error=str(e))

    async def stream(
        self,
        keepalive_seconds: float = 15.0,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield queued frames until closed; keepalive comments while idle.

        Frames queued before close() are still flushed. Always ends with
        mark_closed(), whether the client disconnected (generator closed
        by the server) or we closed it.
        """
        try:
            while not (self._closed and self._queue.empty()):
                try:
                    frame = await asyncio.wait_for(
                        self._queue.get(), timeout=keepalive_seconds
                    )
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        break
                    yield KEEPALIVE_FRAME
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            self.mark_closed()
