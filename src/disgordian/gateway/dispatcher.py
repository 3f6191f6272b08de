"""
gateway/dispatcher.py — Outbound Dispatcher

The only writer on the connection. Heartbeats and application frames
go through one FIFO queue, so frames hit the wire whole and in the
order they were submitted.

Usage:
    dispatcher = OutboundDispatcher(conn)
    task = asyncio.create_task(dispatcher.run())
    dispatcher.submit('{"op": 1, "d": null}')
    dispatcher.close()      # drain what is queued, then run() returns
"""

from __future__ import annotations

import asyncio
from typing import Optional

from disgordian.exceptions import DispatcherClosedError, TransportError
from disgordian.gateway.connection import CONNECTION_ERRORS, GatewayConnection
from disgordian.observability.logger import get_logger

log = get_logger(__name__)

_CLOSE = object()


class OutboundDispatcher:
    """Single-consumer, unbounded FIFO of pre-serialized text frames."""

    def __init__(self, connection: GatewayConnection) -> None:
        self._conn = connection
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._sentinel_queued = False
        self.sent_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Frames queued but not yet written."""
        return self._queue.qsize() - (1 if self._sentinel_queued else 0)

    def submit(self, frame: str) -> None:
        """Queue a frame. Never blocks; fails once the path is closed."""
        if self._closed:
            raise DispatcherClosedError("outbound path is closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        """Stop accepting frames. Already-queued frames are still written."""
        self._closed = True
        self._queue_sentinel()

    def _queue_sentinel(self) -> None:
        if not self._sentinel_queued:
            self._sentinel_queued = True
            self._queue.put_nowait(_CLOSE)

    async def run(self) -> None:
        """
        Write queued frames until close() has been called and the queue
        is drained. A failed write raises TransportError.
        """
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                self._sentinel_queued = False
                log.debug("gateway.dispatcher.drained", sent=self.sent_count)
                return
            try:
                await self._conn.send(frame)
            except CONNECTION_ERRORS as exc:
                self._fail()
                log.warning(
                    "gateway.dispatcher.write_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise TransportError(f"write failed: {exc}") from exc
            self.sent_count += 1
            log.debug("gateway.dispatcher.sent", frame=frame)

    def _fail(self) -> None:
        # Nothing more can be written; refuse further submissions.
        self._closed = True

    def abandon(self) -> int:
        """
        Drop every queued frame and let run() return.
        Used when the connection is already gone. Returns how many were dropped.
        """
        dropped = 0
        while True:
            try:
                item: Optional[object] = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _CLOSE:
                dropped += 1
        self._closed = True
        self._sentinel_queued = False
        self._queue_sentinel()
        return dropped
