"""
gateway/connection.py — Duplex connection seam

The session only needs recv / send / close from a connection, so tests
can swap the WebSocket for an in-memory fake through `connector`.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Protocol

import websockets


class GatewayConnection(Protocol):
    async def recv(self) -> str | bytes: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[GatewayConnection]]

# Raised by recv/send once the socket is gone
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    websockets.ConnectionClosed,
    OSError,
)

# Raised while dialing
DIAL_ERRORS: tuple[type[BaseException], ...] = (
    websockets.WebSocketException,
    OSError,
    asyncio.TimeoutError,
)


def websocket_connector(max_size: int = 2**20) -> Connector:
    """Return a connector that dials with the `websockets` client."""

    async def _connect(url: str) -> GatewayConnection:
        return await websockets.connect(url, max_size=max_size)

    return _connect
