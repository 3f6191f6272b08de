"""
gateway/pacemaker.py — Heartbeat Pacemaker

Every `interval_ms` it builds {"op": 1, "d": <last sequence>} and hands
it to the outbound dispatcher. The first beat goes out one full
interval after start.

Heartbeat ACKs (op 11) are not tracked here: a missed ACK does not
force a reconnect in this version.
"""

from __future__ import annotations

import asyncio

from disgordian.exceptions import DispatcherClosedError
from disgordian.gateway.dispatcher import OutboundDispatcher
from disgordian.gateway.protocol import encode, make_heartbeat
from disgordian.gateway.sequence import SequenceTracker
from disgordian.observability.logger import get_logger

log = get_logger(__name__)


class Pacemaker:
    """Fixed-period heartbeat sender, stoppable at any time."""

    def __init__(
        self,
        interval_ms: int,
        tracker: SequenceTracker,
        dispatcher: OutboundDispatcher,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError(f"heartbeat interval must be positive, got {interval_ms}")
        self._interval = interval_ms / 1000.0
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._stop = asyncio.Event()
        self.beats = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Wake the pacemaker and end run(). Safe to call more than once."""
        self._stop.set()

    def beat(self) -> bool:
        """
        Submit one heartbeat now. Returns False if the pacemaker has been
        stopped or the outbound path is closed.
        """
        if self._stop.is_set():
            return False
        frame = encode(make_heartbeat(self._tracker.read()))
        try:
            self._dispatcher.submit(frame)
        except DispatcherClosedError:
            log.debug("gateway.pacemaker.outbound_closed")
            self._stop.set()
            return False
        self.beats += 1
        log.debug("gateway.pacemaker.beat", frame=frame, beats=self.beats)
        return True

    async def run(self) -> None:
        log.info("gateway.pacemaker.started", interval_s=self._interval)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                if not self.beat():
                    break
        log.info("gateway.pacemaker.stopped", beats=self.beats)
