"""
Shared fixtures for gateway tests: an in-memory duplex connection that
stands in for the WebSocket, and a connector that hands it out.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

_EOF = object()


class FakeConnection:
    """
    recv() pops frames fed by the test; send() records frames.
    feed_close() makes the next recv() fail the way a peer close does,
    close() unblocks any pending recv() and counts how often it was called.
    """

    def __init__(self) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.close_calls = 0
        self.fail_sends = False
        self._closed = asyncio.Event()

    # -- test side --------------------------------------------------------

    def feed(self, frame: Any) -> None:
        self.inbound.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def feed_close(self) -> None:
        self.inbound.put_nowait(_EOF)

    def sent_json(self) -> list[dict]:
        return [json.loads(f) for f in self.sent]

    # -- connection side --------------------------------------------------

    async def recv(self):
        if self._closed.is_set():
            raise ConnectionClosedOK(None, None)
        get_task = asyncio.ensure_future(self.inbound.get())
        closed_task = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, closed_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for t in (get_task, closed_task):
                if not t.done():
                    t.cancel()
        if get_task in done:
            item = get_task.result()
            if item is _EOF:
                raise ConnectionClosedOK(None, None)
            return item
        raise ConnectionClosedOK(None, None)

    async def send(self, message: str) -> None:
        if self.fail_sends or self._closed.is_set():
            raise ConnectionClosedError(None, None)
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self._closed.set()


HELLO = {"op": 10, "d": {"heartbeat_interval": 41250}}
READY = {
    "op": 0,
    "t": "READY",
    "s": 1,
    "d": {"session_id": "abc123", "user": {"id": "42", "username": "disgordian"}},
}


@pytest.fixture
def fake_conn():
    return FakeConnection()


@pytest.fixture
def connector(fake_conn):
    async def _connect(url: str):
        _connect.urls.append(url)
        return fake_conn
    _connect.urls = []
    return _connect


@pytest.fixture
def handshake(fake_conn):
    """Queue a valid Hello + Ready on the fake connection."""
    def _feed(hello: dict = HELLO, ready: dict = READY) -> None:
        fake_conn.feed(hello)
        fake_conn.feed(ready)
    return _feed


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll `predicate` on the event loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until
