"""
gateway/session.py — Gateway Session Coordinator

Owns one gateway connection from dial to close:

    CONNECTING  → dial the gateway URL
    HANDSHAKING → Hello (op 10) → Identify (op 2) → Ready (op 0, t=READY)
    ACTIVE      → pacemaker, outbound dispatcher and inbound pump run as tasks
    CLOSING     → stop heartbeats, drain or drop queued frames, close once
    CLOSED      → terminal

ACTIVE ends on whichever comes first: the pump sees the connection end,
request_stop() / close() is called, or the outbound path finishes
(close_outbound() or a failed write).

Usage:
    session = GatewaySession(url, token, on_dispatch=router.dispatch)
    result = await session.run()

    async with GatewaySession(url, token) as session:   # open() on enter
        session.send(envelope)
        await session.serve()
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from disgordian.config.settings import GatewayConfig
from disgordian.exceptions import (
    DecodeError,
    DispatcherClosedError,
    GatewayError,
    HandshakeError,
    TransportError,
)
from disgordian.gateway.connection import (
    CONNECTION_ERRORS,
    DIAL_ERRORS,
    Connector,
    GatewayConnection,
    websocket_connector,
)
from disgordian.gateway.dispatcher import OutboundDispatcher
from disgordian.gateway.pacemaker import Pacemaker
from disgordian.gateway.protocol import (
    READY_EVENT,
    DispatchEvent,
    Envelope,
    Opcode,
    decode,
    encode,
    make_identify,
)
from disgordian.gateway.pump import DispatchHandler, InboundPump
from disgordian.gateway.sequence import SequenceTracker
from disgordian.observability.logger import bind_session, clear_session, get_logger

log = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTING  = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE      = "active"
    CLOSING     = "closing"
    CLOSED      = "closed"


# Triggers that leave the connection unusable, so queued frames are dropped
_DEAD_CONNECTION = {"remote_closed", "decode_error", "transport_error"}


@dataclass
class SessionResult:
    """How an ACTIVE session ended."""
    reason: str        # remote_closed | stopped | outbound_closed | decode_error | transport_error
    dispatch_count: int = 0
    last_sequence: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def saw_dispatch(self) -> bool:
        return self.dispatch_count > 0


def gateway_url(base_url: str, config: GatewayConfig) -> str:
    """Append the protocol version / encoding query to a resolved gateway URL."""
    suffix = config.query_suffix
    if "?" in base_url:
        return f"{base_url}&{suffix[1:]}"
    return base_url + suffix


def _ignore(event: DispatchEvent) -> None:
    return None


class GatewaySession:
    """
    One gateway session. Not reusable: after CLOSED, build a new one.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        on_dispatch: Optional[DispatchHandler] = None,
        config: Optional[GatewayConfig] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._url = gateway_url(url, self._config)
        self._token = token
        self._on_dispatch = on_dispatch or _ignore
        self._connector = connector or websocket_connector(self._config.max_message_size)

        self.id = uuid.uuid4().hex[:8]
        self._state = SessionState.CONNECTING
        self._conn: Optional[GatewayConnection] = None
        self._conn_closed = False
        self._tracker = SequenceTracker()
        self._heartbeat_interval_ms: Optional[int] = None
        self._session_id: Optional[str] = None
        self.user: Optional[dict[str, Any]] = None
        self._ready_event: Optional[DispatchEvent] = None

        self._dispatcher: Optional[OutboundDispatcher] = None
        self._pacemaker: Optional[Pacemaker] = None
        self._pump: Optional[InboundPump] = None
        self._tasks: dict[str, asyncio.Task] = {}

        self._stop = asyncio.Event()
        self._closed = asyncio.Event()
        self._opened = False
        self._closing = False
        self._trigger: Optional[str] = None
        self._trigger_error: Optional[BaseException] = None
        self.result: Optional[SessionResult] = None

    async def __aenter__(self) -> "GatewaySession":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Read-only state
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def url(self) -> str:
        return self._url

    @property
    def heartbeat_interval_ms(self) -> Optional[int]:
        return self._heartbeat_interval_ms

    @property
    def sequence(self) -> Optional[int]:
        return self._tracker.read()

    @property
    def tracker(self) -> SequenceTracker:
        return self._tracker

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def _set_state(self, new: SessionState) -> None:
        old, self._state = self._state, new
        log.info("gateway.session.state", old=old.value, new=new.value)

    # ─────────────────────────────────────────────────────────────────────────
    # CONNECTING + HANDSHAKING
    # ─────────────────────────────────────────────────────────────────────────

    async def open(self) -> None:
        """
        Dial and complete the handshake.

        Raises TransportError if the dial fails, HandshakeError on any
        protocol deviation. Either way the session ends up CLOSED with
        nothing left running.
        """
        if self._opened or self._closing:
            raise GatewayError("session has already been opened")
        self._opened = True
        bind_session(self.id)

        log.info("gateway.session.dialing", url=self._url)
        try:
            self._conn = await self._connector(self._url)
        except DIAL_ERRORS as exc:
            log.error(
                "gateway.session.dial_failed",
                url=self._url,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._abort()
            raise TransportError(f"failed to open gateway connection: {exc}") from exc

        self._set_state(SessionState.HANDSHAKING)
        try:
            await self._handshake()
        except HandshakeError as exc:
            log.error(
                "gateway.session.handshake_failed",
                stage=exc.stage,
                error=str(exc),
                hint="check the bot token and gateway version",
            )
            await self._abort()
            raise

    async def _handshake(self) -> None:
        hello = await self._expect("hello")
        if hello.op != Opcode.HELLO:
            raise HandshakeError(f"expected Hello (op 10), got op {hello.op}", stage="hello")

        interval = hello.d.get("heartbeat_interval") if isinstance(hello.d, dict) else None
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            raise HandshakeError(
                f"Hello carried no usable heartbeat_interval: {interval!r}", stage="hello"
            )
        self._heartbeat_interval_ms = interval
        log.info("gateway.session.hello", heartbeat_interval_ms=interval)

        identify = make_identify(
            self._token,
            self._config.properties,
            compress=self._config.compress,
            large_threshold=self._config.large_threshold,
            shard=self._config.shard,
        )
        try:
            await self._conn.send(encode(identify))
        except CONNECTION_ERRORS as exc:
            raise HandshakeError(f"could not send Identify: {exc}", stage="identify") from exc
        log.info("gateway.session.identify_sent", shard=self._config.shard)

        ready = await self._expect("ready")
        if not ready.is_dispatch or ready.t != READY_EVENT:
            raise HandshakeError(
                f"expected READY dispatch, got op={ready.op} t={ready.t}", stage="ready"
            )
        if ready.s is None:
            raise HandshakeError("READY carried no sequence number", stage="ready")

        self._tracker.update(ready.s)
        payload = ready.d if isinstance(ready.d, dict) else {}
        self._session_id = payload.get("session_id")
        self.user = payload.get("user")
        self._ready_event = DispatchEvent.from_envelope(ready)
        log.info(
            "gateway.session.ready",
            seq=ready.s,
            session_id=self._session_id,
            user=(self.user or {}).get("username"),
        )

    async def _expect(self, stage: str) -> Envelope:
        try:
            raw = await self._conn.recv()
        except CONNECTION_ERRORS as exc:
            raise HandshakeError(f"connection closed during handshake: {exc}", stage=stage) from exc
        try:
            return decode(raw)
        except DecodeError as exc:
            raise HandshakeError(f"malformed frame: {exc}", stage=stage) from exc

    async def _abort(self) -> None:
        """Startup failed: release whatever was acquired and go CLOSED."""
        self._closing = True
        self._stop.set()
        await self._close_connection()
        self._set_state(SessionState.CLOSED)
        self._closed.set()
        clear_session()

    # ─────────────────────────────────────────────────────────────────────────
    # ACTIVE
    # ─────────────────────────────────────────────────────────────────────────

    async def serve(self) -> SessionResult:
        """Run the session until it ends, then close it. Requires open()."""
        if self._state is not SessionState.HANDSHAKING or self._ready_event is None:
            raise GatewayError(f"cannot serve a session in state {self._state.value}")

        self._dispatcher = OutboundDispatcher(self._conn)
        self._pacemaker = Pacemaker(self._heartbeat_interval_ms, self._tracker, self._dispatcher)
        self._pump = InboundPump(
            self._conn,
            self._tracker,
            self._on_dispatch,
            on_heartbeat_request=self._pacemaker.beat,
        )
        self._set_state(SessionState.ACTIVE)
        self._pump.forward(self._ready_event)

        pump_task = asyncio.create_task(self._pump.run(), name=f"gateway-pump-{self.id}")
        dispatcher_task = asyncio.create_task(
            self._dispatcher.run(), name=f"gateway-dispatcher-{self.id}"
        )
        pacemaker_task = asyncio.create_task(
            self._pacemaker.run(), name=f"gateway-pacemaker-{self.id}"
        )
        stop_task = asyncio.create_task(self._stop.wait(), name=f"gateway-stop-{self.id}")
        self._tasks = {
            "pump": pump_task,
            "dispatcher": dispatcher_task,
            "pacemaker": pacemaker_task,
            "stop": stop_task,
        }

        try:
            done, _ = await asyncio.wait(
                {pump_task, dispatcher_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._note_trigger("stopped")
            await self.close()
            raise

        if pump_task in done:
            if pump_task.exception() is not None:
                self._note_trigger("transport_error", pump_task.exception())
            else:
                pumped = pump_task.result()
                self._note_trigger(
                    "remote_closed" if pumped.reason == "closed" else "decode_error",
                    pumped.error,
                )
        elif dispatcher_task in done:
            exc = dispatcher_task.exception()
            self._note_trigger("transport_error" if exc else "outbound_closed", exc)
        else:
            self._note_trigger("stopped")

        await self.close()
        return self.result

    def _note_trigger(self, reason: str, error: Optional[BaseException] = None) -> None:
        # First trigger wins; later ones are consequences of closing.
        if self._trigger is None:
            self._trigger = reason
            self._trigger_error = error

    # ─────────────────────────────────────────────────────────────────────────
    # External controls
    # ─────────────────────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        """Ask the session to close. Safe to call from a signal handler."""
        self._note_trigger("stopped")
        self._stop.set()

    def close_outbound(self) -> None:
        """Close the submission path; the session closes once it drains."""
        if self._dispatcher is not None:
            self._dispatcher.close()

    def submit(self, frame: str) -> None:
        """Queue a pre-serialized text frame for sending."""
        if self._dispatcher is None or self._state is not SessionState.ACTIVE:
            raise DispatcherClosedError(f"session is {self._state.value}, not active")
        self._dispatcher.submit(frame)

    def send(self, envelope: Envelope) -> None:
        self.submit(encode(envelope))

    async def run(self) -> SessionResult:
        """open() + serve(), always ending CLOSED."""
        await self.open()
        try:
            return await self.serve()
        finally:
            await self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # CLOSING → CLOSED
    # ─────────────────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Shut the session down. Idempotent: concurrent and repeated callers
        all return once the first one has reached CLOSED.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        self._note_trigger("stopped")
        self._stop.set()

        if not self._opened:
            self._set_state(SessionState.CLOSED)
            self._closed.set()
            return

        self._set_state(SessionState.CLOSING)
        timeout = self._config.drain_timeout_seconds
        try:
            if self._pacemaker is not None:
                self._pacemaker.stop()
            await self._drain_outbound(timeout)
            await self._close_connection()
            await self._wait_task("pump", timeout)
            if self._pump is not None:
                await self._pump.drain_handlers(timeout)
        finally:
            await self._cancel_tasks()
            self.result = SessionResult(
                reason=self._trigger or "stopped",
                dispatch_count=self._pump.dispatch_count if self._pump else 0,
                last_sequence=self._tracker.read(),
                error=self._trigger_error,
            )
            self._set_state(SessionState.CLOSED)
            self._closed.set()
            self._log_summary(self.result)
            clear_session()

    async def _drain_outbound(self, timeout: float) -> None:
        if self._dispatcher is None:
            return
        if self._trigger in _DEAD_CONNECTION:
            dropped = self._dispatcher.abandon()
            if dropped:
                log.warning("gateway.session.outbound_dropped", count=dropped)
        else:
            self._dispatcher.close()
        await self._wait_task("dispatcher", timeout)

    async def _wait_task(self, name: str, timeout: float) -> None:
        task = self._tasks.get(name)
        if task is None or task.done():
            return
        _, pending = await asyncio.wait({task}, timeout=timeout)
        if pending:
            log.warning("gateway.session.task_timeout", task=name, timeout_s=timeout)
            task.cancel()

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_connection(self) -> None:
        """Close the connection exactly once, whoever gets here first."""
        if self._conn is None or self._conn_closed:
            return
        self._conn_closed = True
        try:
            await self._conn.close()
        except CONNECTION_ERRORS as exc:
            log.debug("gateway.session.close_error", error=str(exc))
        log.info("gateway.session.connection_closed")

    def _log_summary(self, result: SessionResult) -> None:
        fields = {
            "reason": result.reason,
            "dispatch_count": result.dispatch_count,
            "last_sequence": result.last_sequence,
        }
        if result.error is not None:
            fields["error"] = str(result.error)
        if result.reason in ("stopped", "outbound_closed"):
            log.info("gateway.session.ended", **fields)
        elif not result.saw_dispatch:
            log.error(
                "gateway.session.ended_before_dispatch",
                hint="no events after READY; probable login or protocol failure",
                **fields,
            )
        else:
            log.warning("gateway.session.disconnected", **fields)
