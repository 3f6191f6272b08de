"""
gateway/pump.py — Inbound Pump

The only reader on the connection and the only writer of the sequence
tracker. Reads one frame at a time, records its sequence number, and
routes it by opcode:

    0  Dispatch        → on_dispatch(event) in its own task
    1  Heartbeat       → on_heartbeat_request()  (server wants a beat now)
    11 Heartbeat ACK   → counted
    7  Reconnect       → logged (no reconnect in this version)
    9  Invalid Session → logged
    *  anything else   → ignored

Dispatch handlers run fire-and-forget: no ordering between events, no
back-pressure, and a failing handler only produces a log line.

The loop ends on a closed connection or an undecodable frame. Either
way that is the definitive "session over" signal; the session decides
whether it was a normal shutdown.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from disgordian.exceptions import DecodeError
from disgordian.gateway.connection import CONNECTION_ERRORS, GatewayConnection
from disgordian.gateway.protocol import DispatchEvent, Envelope, Opcode, decode
from disgordian.gateway.sequence import SequenceTracker
from disgordian.observability.logger import get_logger

log = get_logger(__name__)

DispatchHandler = Callable[[DispatchEvent], Any]


@dataclass
class PumpResult:
    """Why the pump stopped and how much it saw."""
    reason: str                          # "closed" | "decode_error"
    dispatch_count: int = 0
    error: Optional[BaseException] = None

    @property
    def saw_dispatch(self) -> bool:
        return self.dispatch_count > 0


class InboundPump:
    """Serial reader that classifies envelopes and fans Dispatch events out."""

    def __init__(
        self,
        connection: GatewayConnection,
        tracker: SequenceTracker,
        on_dispatch: DispatchHandler,
        on_heartbeat_request: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._conn = connection
        self._tracker = tracker
        self._on_dispatch = on_dispatch
        self._on_heartbeat_request = on_heartbeat_request
        self._handler_tasks: set[asyncio.Task] = set()
        self.dispatch_count = 0
        self.ack_count = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Read loop
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self) -> PumpResult:
        result: PumpResult
        while True:
            try:
                raw = await self._conn.recv()
            except CONNECTION_ERRORS as exc:
                result = PumpResult("closed", self.dispatch_count, exc)
                break

            try:
                env = decode(raw)
            except DecodeError as exc:
                log.error("gateway.pump.decode_failed", error=str(exc))
                result = PumpResult("decode_error", self.dispatch_count, exc)
                break

            self.handle(env)

        log.info(
            "gateway.pump.ended",
            reason=result.reason,
            dispatch_count=result.dispatch_count,
            acks=self.ack_count,
        )
        return result

    def handle(self, env: Envelope) -> None:
        """Apply one decoded envelope: sequence first, then route by opcode."""
        log.debug("gateway.pump.received", op=env.op, t=env.t, s=env.s)
        self._tracker.update(env.s)

        if env.op == Opcode.DISPATCH:
            self.dispatch_count += 1
            self._spawn(DispatchEvent.from_envelope(env))
        elif env.op == Opcode.HEARTBEAT:
            if self._on_heartbeat_request is not None:
                self._on_heartbeat_request()
        elif env.op == Opcode.HEARTBEAT_ACK:
            self.ack_count += 1
        elif env.op == Opcode.RECONNECT:
            log.warning("gateway.pump.reconnect_requested")
        elif env.op == Opcode.INVALID_SESSION:
            log.warning("gateway.pump.invalid_session", resumable=env.d)
        else:
            log.debug("gateway.pump.unknown_opcode", op=env.op)

    # ─────────────────────────────────────────────────────────────────────────
    # Handler fan-out
    # ─────────────────────────────────────────────────────────────────────────

    def forward(self, event: DispatchEvent) -> None:
        """Hand an event that arrived outside the read loop (READY) to the handler."""
        self._spawn(event)

    def _spawn(self, event: DispatchEvent) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _deliver(self, event: DispatchEvent) -> None:
        try:
            result = self._on_dispatch(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(
                "gateway.pump.handler_error",
                event_type=event.type,
                seq=event.seq,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    @property
    def in_flight(self) -> int:
        return len(self._handler_tasks)

    async def drain_handlers(self, timeout: float) -> int:
        """
        Wait up to `timeout` seconds for running handlers, then cancel
        the rest. Returns how many were cancelled.
        """
        tasks = list(self._handler_tasks)
        if not tasks:
            return 0
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            log.warning("gateway.pump.handlers_cancelled", count=len(still_running))
        return len(still_running)
