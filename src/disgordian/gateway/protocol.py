"""
gateway/protocol.py — Gateway Wire Codec

Envelope schema for the Discord-style gateway protocol.
Every frame is a JSON object with an integer `op`, and optionally
`s` (sequence), `t` (event type) and `d` (payload).

`op` is Optional on purpose: 0 (Dispatch) is the most common opcode,
so "absent" has to stay distinguishable from zero.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from disgordian.exceptions import DecodeError


# ─────────────────────────────────────────────────────────────────────────────
# Opcodes
# ─────────────────────────────────────────────────────────────────────────────

class Opcode(IntEnum):
    """Opcodes the session knows about. Any other integer is reserved."""

    DISPATCH        = 0
    HEARTBEAT       = 1
    IDENTIFY        = 2
    RECONNECT       = 7
    INVALID_SESSION = 9
    HELLO           = 10
    HEARTBEAT_ACK   = 11


READY_EVENT = "READY"


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Envelope:
    """
    One gateway frame.

    `d` is kept as the raw decoded JSON structure. Its shape depends on
    `op` and `t` and is left to whoever consumes the event.
    """
    op: Optional[int]
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @property
    def is_dispatch(self) -> bool:
        return self.op == Opcode.DISPATCH

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"op": self.op, "d": self.d}
        if self.s is not None:
            out["s"] = self.s
        if self.t is not None:
            out["t"] = self.t
        return out


@dataclass(frozen=True)
class DispatchEvent:
    """A Dispatch envelope as handed to the event-handling side."""
    type: str
    seq: Optional[int]
    payload: Any

    @classmethod
    def from_envelope(cls, env: Envelope) -> "DispatchEvent":
        return cls(type=env.t or "", seq=env.s, payload=env.d)


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────

def _is_int(value: Any) -> bool:
    # bool is an int subclass in Python; the wire never means it as one
    return isinstance(value, int) and not isinstance(value, bool)


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame."""
    if envelope.op is None:
        raise ValueError("cannot encode an envelope without an opcode")
    return json.dumps(envelope.to_dict())


def decode(raw: str | bytes) -> Envelope:
    """
    Parse one text frame into an Envelope.

    Raises DecodeError if the frame is not a JSON object, if `op` is
    missing or not an integer, or if `s` / `t` have the wrong type.
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as exc:
        raise DecodeError(f"frame is not valid JSON: {exc}", raw) from exc

    if not isinstance(data, dict):
        raise DecodeError(f"frame is a JSON {type(data).__name__}, not an object", raw)

    op = data.get("op")
    if op is None:
        raise DecodeError("frame has no opcode", raw)
    if not _is_int(op):
        raise DecodeError(f"opcode must be an integer, got {op!r}", raw)

    seq = data.get("s")
    if seq is not None and not _is_int(seq):
        raise DecodeError(f"sequence must be an integer, got {seq!r}", raw)

    event_type = data.get("t")
    if event_type is not None and not isinstance(event_type, str):
        raise DecodeError(f"event type must be a string, got {event_type!r}", raw)

    return Envelope(op=op, d=data.get("d"), s=seq, t=event_type)


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers: client → server envelopes
# ─────────────────────────────────────────────────────────────────────────────

def make_heartbeat(seq: Optional[int]) -> Envelope:
    """Build a Heartbeat carrying the last-seen sequence (or null)."""
    return Envelope(op=Opcode.HEARTBEAT.value, d=seq)


def make_identify(
    token: str,
    properties: dict[str, str],
    *,
    compress: bool = False,
    large_threshold: int = 250,
    shard: tuple[int, int] | list[int] = (0, 1),
) -> Envelope:
    """Build the Identify login envelope."""
    return Envelope(
        op=Opcode.IDENTIFY.value,
        d={
            "token": token,
            "properties": dict(properties),
            "compress": compress,
            "large_threshold": large_threshold,
            "shard": [int(shard[0]), int(shard[1])],
        },
    )
