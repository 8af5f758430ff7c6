"""Time ordered 63-bit identifiers.

Layout: 41 bits of milliseconds since EPOCH_MS, 10 bits of worker id and a
12 bit per-millisecond sequence.
"""

import os
import threading
import time

EPOCH_MS = 1704067200000  # 2024-01-01T00:00:00Z
_WORKER_BITS = 10
_SEQUENCE_BITS = 12
_MAX_SEQUENCE = (1 << _SEQUENCE_BITS) - 1


class SnowflakeGenerator:
    """Thread safe snowflake id generator."""

    def __init__(self, worker_id: int) -> None:
        self._worker_id = worker_id & ((1 << _WORKER_BITS) - 1)
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def next_id(self) -> int:
        with self._lock:
            now = int(time.time() * 1000)
            if now < self._last_ms:
                # Clock moved backwards, keep issuing from the last timestamp.
                now = self._last_ms
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & _MAX_SEQUENCE
                if self._sequence == 0:
                    while now <= self._last_ms:
                        now = int(time.time() * 1000)
            else:
                self._sequence = 0
            self._last_ms = now
            return (
                ((now - EPOCH_MS) << (_WORKER_BITS + _SEQUENCE_BITS))
                | (self._worker_id << _SEQUENCE_BITS)
                | self._sequence
            )


_generator = SnowflakeGenerator(os.getpid())


def next_id() -> int:
    """Return a new unique id."""
    return _generator.next_id()
