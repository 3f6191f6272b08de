"""
events.py — Event Router

The application side of the gateway: receives each Dispatch event the
session forwards and calls every handler subscribed to its type.

"*" subscribers see every event, including types nothing else knows
about, so new gateway events are never silently dropped.

Usage:
    router = EventRouter()

    @router.on("MESSAGE_CREATE")
    async def on_message(event): ...

    session = GatewaySession(url, token, on_dispatch=router.dispatch)
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable

from disgordian.gateway.protocol import DispatchEvent
from disgordian.observability.logger import get_logger

log = get_logger(__name__)

WILDCARD = "*"

EventHandler = Callable[[DispatchEvent], Any]


class EventRouter:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of subscribe()."""
        def _register(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler
        return _register

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return [*self._handlers.get(event_type, ()), *self._handlers.get(WILDCARD, ())]

    async def dispatch(self, event: DispatchEvent) -> int:
        """
        Run every matching handler in subscription order. A failing
        handler is logged and does not stop the others.
        Returns the number of handlers that completed without error.
        """
        handlers = self.handlers_for(event.type)
        if not handlers:
            log.debug("events.unhandled", event_type=event.type, seq=event.seq)
            return 0

        ok = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                ok += 1
            except Exception as e:
                log.error(
                    "events.handler_error",
                    event_type=event.type,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        return ok
