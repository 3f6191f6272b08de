"""
gateway/ — Gateway Session Manager

One persistent WebSocket per GatewaySession: handshake, heartbeats,
sequence tracking, and the single reader / single writer pair that
share the connection.
"""

from disgordian.gateway.protocol import DispatchEvent, Envelope, Opcode, decode, encode
from disgordian.gateway.sequence import SequenceTracker
from disgordian.gateway.session import GatewaySession, SessionResult, SessionState

__all__ = [
    "DispatchEvent",
    "Envelope",
    "Opcode",
    "decode",
    "encode",
    "SequenceTracker",
    "GatewaySession",
    "SessionResult",
    "SessionState",
]
