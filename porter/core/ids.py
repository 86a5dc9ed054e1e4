"""Monotonic ULID generation for run, result and output ids."""

from __future__ import annotations

import threading

import ulid

_lock = threading.Lock()
_last: int = 0


def new_ulid() -> str:
    """Return a ULID strictly greater than the last one from this process.

    ULIDs from the same millisecond are otherwise random in their low bits,
    so the previous value is bumped by one when a fresh ULID does not sort
    after it.
    """
    global _last
    with _lock:
        candidate = ulid.new()
        if candidate.int <= _last:
            candidate = ulid.from_int(_last + 1)
        _last = candidate.int
        return candidate.str
