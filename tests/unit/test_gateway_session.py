"""
tests/unit/test_gateway_session.py — Session Coordinator Tests

End-to-end over an in-memory connection:
  - Hello → Identify → Ready, sequence captured, next heartbeat carries it
  - bad or missing heartbeat_interval aborts before anything starts
  - peer closing before Ready is a handshake failure, never ACTIVE
  - unknown event types still reach the handler
  - the connection is closed exactly once whichever trigger fires first
  - stop drains queued frames before the connection closes
"""

from __future__ import annotations

import asyncio

import pytest

from disgordian.config.settings import GatewayConfig
from disgordian.exceptions import (
    DispatcherClosedError,
    GatewayError,
    HandshakeError,
    TransportError,
)
from disgordian.gateway.protocol import Envelope
from disgordian.gateway.session import GatewaySession, SessionState, gateway_url

HELLO = {"op": 10, "d": {"heartbeat_interval": 41250}}


def _session(connector, on_dispatch=None, **config) -> GatewaySession:
    return GatewaySession(
        "wss://gateway.example",
        "secret-token",
        on_dispatch=on_dispatch,
        config=GatewayConfig(drain_timeout_seconds=1.0, **config),
        connector=connector,
    )


def _record_states(session: GatewaySession) -> list[SessionState]:
    states: list[SessionState] = []
    original = session._set_state

    def _spy(new):
        states.append(new)
        original(new)

    session._set_state = _spy
    return states


# ─────────────────────────────────────────────────────────────────────────────
# URL
# ─────────────────────────────────────────────────────────────────────────────

class TestGatewayUrl:
    def test_appends_version_suffix(self):
        assert gateway_url("wss://gw.example", GatewayConfig()) == "wss://gw.example?v=5&encoding=json"

    def test_existing_query(self):
        url = gateway_url("wss://gw.example/?x=1", GatewayConfig(version=6))
        assert url == "wss://gw.example/?x=1&v=6&encoding=json"

    @pytest.mark.asyncio
    async def test_connector_gets_full_url(self, connector, handshake):
        handshake()
        session = _session(connector)
        await session.open()
        assert connector.urls == ["wss://gateway.example?v=5&encoding=json"]
        await session.close()


# ─────────────────────────────────────────────────────────────────────────────
# Handshake
# ─────────────────────────────────────────────────────────────────────────────

class TestHandshake:
    @pytest.mark.asyncio
    async def test_ready_sets_sequence_and_next_heartbeat(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()

        assert session.heartbeat_interval_ms == 41250
        assert session.sequence == 1
        assert session.session_id == "abc123"
        assert session.user["username"] == "disgordian"

        identify = fake_conn.sent_json()[0]
        assert identify["op"] == 2
        assert identify["d"]["token"] == "secret-token"
        assert identify["d"]["properties"]["$browser"] == "Disgordian"
        assert identify["d"]["compress"] is False
        assert identify["d"]["large_threshold"] == 250
        assert identify["d"]["shard"] == [0, 1]

        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)
        fake_conn.feed({"op": 1, "d": None})  # server asks for a heartbeat now
        await until(lambda: len(fake_conn.sent) >= 2)
        assert fake_conn.sent_json()[1] == {"op": 1, "d": 1}

        session.request_stop()
        result = await asyncio.wait_for(serving, timeout=2.0)
        assert result.reason == "stopped"
        assert result.last_sequence == 1

    @pytest.mark.parametrize(
        "hello",
        [
            {"op": 10, "d": {"heartbeat_interval": 0}},
            {"op": 10, "d": {}},
            {"op": 10, "d": None},
            {"op": 10, "d": {"heartbeat_interval": "41250"}},
            {"op": 11, "d": {"heartbeat_interval": 41250}},
        ],
    )
    @pytest.mark.asyncio
    async def test_bad_hello_is_fatal(self, fake_conn, connector, hello):
        fake_conn.feed(hello)
        session = _session(connector)
        states = _record_states(session)

        with pytest.raises(HandshakeError) as exc_info:
            await session.open()

        assert exc_info.value.stage == "hello"
        assert fake_conn.sent == []  # no Identify
        assert session.state is SessionState.CLOSED
        assert SessionState.ACTIVE not in states
        assert fake_conn.close_calls == 1
        with pytest.raises(GatewayError):
            await session.serve()

    @pytest.mark.asyncio
    async def test_peer_closes_after_hello(self, fake_conn, connector):
        fake_conn.feed(HELLO)
        fake_conn.feed_close()
        session = _session(connector)
        states = _record_states(session)

        with pytest.raises(HandshakeError) as exc_info:
            await session.open()

        assert exc_info.value.stage == "ready"
        assert states == [SessionState.HANDSHAKING, SessionState.CLOSED]
        assert fake_conn.close_calls == 1

    @pytest.mark.asyncio
    async def test_wrong_event_instead_of_ready(self, fake_conn, connector, handshake):
        handshake(ready={"op": 0, "t": "GUILD_CREATE", "s": 1, "d": {}})
        with pytest.raises(HandshakeError, match="READY"):
            await _session(connector).open()

    @pytest.mark.asyncio
    async def test_ready_without_sequence(self, fake_conn, connector, handshake):
        handshake(ready={"op": 0, "t": "READY", "d": {}})
        with pytest.raises(HandshakeError, match="sequence"):
            await _session(connector).open()

    @pytest.mark.asyncio
    async def test_malformed_hello(self, fake_conn, connector):
        fake_conn.feed('{"d": {"heartbeat_interval": 41250}}')
        with pytest.raises(HandshakeError, match="malformed"):
            await _session(connector).open()

    @pytest.mark.asyncio
    async def test_dial_failure(self):
        async def refuse(url):
            raise OSError("connection refused")

        session = _session(refuse)
        with pytest.raises(TransportError):
            await session.open()
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_cannot_open_twice(self, connector, handshake):
        handshake()
        session = _session(connector)
        await session.open()
        with pytest.raises(GatewayError):
            await session.open()
        await session.close()


# ─────────────────────────────────────────────────────────────────────────────
# Active session
# ─────────────────────────────────────────────────────────────────────────────

class TestActive:
    @pytest.mark.asyncio
    async def test_unknown_event_type_forwarded(self, fake_conn, connector, handshake, until):
        seen = []
        handshake()
        fake_conn.feed({"op": 0, "t": "BRAND_NEW_EVENT", "s": 2, "d": {"k": "v"}})
        fake_conn.feed_close()
        session = _session(connector, on_dispatch=seen.append)

        result = await asyncio.wait_for(session.run(), timeout=2.0)

        types = [e.type for e in seen]
        assert "READY" in types
        assert "BRAND_NEW_EVENT" in types
        assert result.reason == "remote_closed"
        assert result.dispatch_count == 1
        assert result.last_sequence == 2
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_remote_close_without_events(self, fake_conn, connector, handshake):
        handshake()
        fake_conn.feed_close()
        result = await asyncio.wait_for(_session(connector).run(), timeout=2.0)
        assert result.reason == "remote_closed"
        assert not result.saw_dispatch
        assert fake_conn.close_calls == 1

    @pytest.mark.asyncio
    async def test_decode_error_ends_session(self, fake_conn, connector, handshake):
        handshake()
        fake_conn.feed("not json at all")
        result = await asyncio.wait_for(_session(connector).run(), timeout=2.0)
        assert result.reason == "decode_error"
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_submit_before_active_rejected(self, connector, handshake):
        handshake()
        session = _session(connector)
        with pytest.raises(DispatcherClosedError):
            session.submit('{"op": 1, "d": null}')
        await session.open()
        with pytest.raises(DispatcherClosedError):
            session.submit('{"op": 1, "d": null}')
        await session.close()

    @pytest.mark.asyncio
    async def test_stop_drains_queued_frames(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        session.submit('{"op": 3, "d": "first"}')
        session.send(Envelope(op=3, d="second"))
        session.request_stop()
        result = await asyncio.wait_for(serving, timeout=2.0)

        payloads = [f["d"] for f in fake_conn.sent_json() if f["op"] == 3]
        assert payloads == ["first", "second"]
        assert result.reason == "stopped"
        with pytest.raises(DispatcherClosedError):
            session.submit("late")

    @pytest.mark.asyncio
    async def test_outbound_closed_ends_session(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        session.close_outbound()
        result = await asyncio.wait_for(serving, timeout=2.0)
        assert result.reason == "outbound_closed"
        assert fake_conn.close_calls == 1

    @pytest.mark.asyncio
    async def test_write_failure_ends_session(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        fake_conn.fail_sends = True
        session.submit('{"op": 3, "d": null}')
        result = await asyncio.wait_for(serving, timeout=2.0)
        assert result.reason == "transport_error"
        assert isinstance(result.error, TransportError)

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_end_session(self, fake_conn, connector, handshake, until):
        handled = []

        def handler(event):
            handled.append(event.type)
            raise ValueError("handler bug")

        handshake()
        fake_conn.feed({"op": 0, "t": "MESSAGE_CREATE", "s": 2, "d": {}})
        session = _session(connector, on_dispatch=handler)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: "MESSAGE_CREATE" in handled)
        assert session.state is SessionState.ACTIVE

        session.request_stop()
        await asyncio.wait_for(serving, timeout=2.0)

    @pytest.mark.asyncio
    async def test_cancelling_serve_closes(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        serving.cancel()
        with pytest.raises(asyncio.CancelledError):
            await serving
        assert session.state is SessionState.CLOSED
        assert fake_conn.close_calls == 1

    @pytest.mark.asyncio
    async def test_context_manager(self, fake_conn, connector, handshake):
        handshake()
        async with _session(connector) as session:
            assert session.sequence == 1
        assert session.state is SessionState.CLOSED
        assert fake_conn.close_calls == 1


# ─────────────────────────────────────────────────────────────────────────────
# Shutdown races
# ─────────────────────────────────────────────────────────────────────────────

class TestSingleClose:
    @pytest.mark.asyncio
    async def test_all_triggers_race(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        fake_conn.feed_close()
        session.request_stop()
        session.close_outbound()
        result = await asyncio.wait_for(serving, timeout=2.0)

        assert fake_conn.close_calls == 1
        assert session.state is SessionState.CLOSED
        assert result.reason in {"remote_closed", "stopped", "outbound_closed"}

    @pytest.mark.asyncio
    async def test_concurrent_close_calls(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        await asyncio.gather(session.close(), session.close(), session.close())
        await asyncio.wait_for(serving, timeout=2.0)

        assert fake_conn.close_calls == 1
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_after_closed_is_noop(self, fake_conn, connector, handshake):
        handshake()
        fake_conn.feed_close()
        session = _session(connector)
        await session.run()
        await session.close()
        assert fake_conn.close_calls == 1

    @pytest.mark.asyncio
    async def test_remote_close_stops_heartbeats(self, fake_conn, connector, handshake, until):
        handshake()
        session = _session(connector)
        await session.open()
        serving = asyncio.create_task(session.serve())
        await until(lambda: session.state is SessionState.ACTIVE)

        fake_conn.feed_close()
        result = await asyncio.wait_for(serving, timeout=2.0)
        assert result.reason == "remote_closed"
        assert [f["op"] for f in fake_conn.sent_json()] == [2]
        assert session._pacemaker.stopped
        assert session._pacemaker.beat() is False
