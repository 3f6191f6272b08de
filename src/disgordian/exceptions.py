"""
exceptions.py — Disgordian Unified Error Hierarchy

All Disgordian-specific exceptions live here. Every layer of the stack
raises typed subclasses of DisgordianError — never bare Exception.

Import from here, not from individual modules:
    from disgordian.exceptions import HandshakeError, TransportError

Hierarchy:
    DisgordianError
    ├── GatewayError
    │   ├── TransportError
    │   ├── ProtocolError
    │   │   ├── DecodeError
    │   │   └── HandshakeError
    │   └── DispatcherClosedError
    └── RestError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class DisgordianError(Exception):
    """Base class for all Disgordian exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(DisgordianError):
    """Base for gateway session errors."""


class TransportError(GatewayError):
    """Dial failure, or a read/write failure on a live connection."""


class ProtocolError(GatewayError):
    """The peer sent something the gateway protocol does not allow."""


class DecodeError(ProtocolError):
    """A frame could not be decoded into an envelope."""

    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        self.raw = raw
        super().__init__(message)


class HandshakeError(ProtocolError):
    """Hello → Identify → Ready did not complete."""

    def __init__(self, message: str, stage: str = "") -> None:
        self.stage = stage
        super().__init__(f"{message} (stage={stage})" if stage else message)


class DispatcherClosedError(GatewayError):
    """A frame was submitted after the outbound path was closed."""


# ─────────────────────────────────────────────────────────────────────────────
# REST layer
# ─────────────────────────────────────────────────────────────────────────────

class RestError(DisgordianError):
    """A REST call failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "DisgordianError",
    # Gateway
    "GatewayError",
    "TransportError",
    "ProtocolError",
    "DecodeError",
    "HandshakeError",
    "DispatcherClosedError",
    # REST
    "RestError",
]
