"""Shared utility helpers for puck-economy."""

from __future__ import annotations

import random
import threading
import time
from datetime import datetime, timezone

# Ordered by ASCII so generated ids sort lexicographically by creation time.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_push_lock = threading.Lock()
_last_push_ms = 0
_last_rand: list[int] = [0] * 12


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return current UTC time as an ISO-8601 string."""
    return now_utc().isoformat()


def generate_push_id() -> str:
    """Return a 20-char, time-ordered unique key for append-only lists.

    The first 8 chars encode the millisecond timestamp; the remaining 12 are
    random, incremented instead of re-drawn when two ids share a millisecond
    so ordering within the same millisecond is preserved.
    """
    global _last_push_ms
    with _push_lock:
        now_ms = int(time.time() * 1000)
        duplicate = now_ms == _last_push_ms
        _last_push_ms = now_ms

        ts_chars = []
        remaining = now_ms
        for _ in range(8):
            ts_chars.append(PUSH_CHARS[remaining % 64])
            remaining //= 64
        prefix = "".join(reversed(ts_chars))

        if not duplicate:
            for i in range(12):
                _last_rand[i] = random.randrange(64)
        else:
            i = 11
            while i >= 0 and _last_rand[i] == 63:
                _last_rand[i] = 0
                i -= 1
            if i >= 0:
                _last_rand[i] += 1

        return prefix + "".join(PUSH_CHARS[n] for n in _last_rand)


def strip_auth_scheme(header: str | None) -> str | None:
    """Drop a leading ``Bearer``/``OAuth`` scheme from an Authorization value."""
    if not header:
        return None
    value = header.strip()
    scheme, _, rest = value.partition(" ")
    if rest and scheme.lower() in ("bearer", "oauth"):
        value = rest.strip()
    return value or None
