"""
gateway/sequence.py — Last-seen sequence number

Written by the inbound pump, read by the pacemaker. Guarded by a
threading.Lock so it stays consistent even when handlers or heartbeats
run off the event loop thread.
"""

from __future__ import annotations

import threading
from typing import Optional


class SequenceTracker:
    """Mutex-guarded holder for the session's last Dispatch sequence number."""

    def __init__(self, initial: Optional[int] = None) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def update(self, seq: Optional[int]) -> bool:
        """
        Store `seq` if the envelope carried one.

        None means the field was absent and leaves the value untouched.
        Returns True if a value was stored.
        """
        if seq is None:
            return False
        with self._lock:
            self._value = seq
        return True

    def read(self) -> Optional[int]:
        with self._lock:
            return self._value
