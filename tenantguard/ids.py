"""Time-ordered identifiers.

UUIDv7 layout: 48-bit unix millisecond timestamp, version nibble,
12 bits of sub-millisecond sequence, variant bits, 62 random bits.
Identifiers generated in one process sort in creation order.
"""

from __future__ import annotations

import secrets
import threading
import time
import uuid

_lock = threading.Lock()
_last_ms = 0
_seq = 0


def uuid7() -> uuid.UUID:
    """Generate a monotonic UUIDv7."""
    global _last_ms, _seq

    with _lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms > _last_ms:
            _last_ms = now_ms
            _seq = secrets.randbits(10)
        else:
            _seq += 1
            if _seq > 0xFFF:
                # Sequence exhausted within this millisecond: borrow the next one
                _last_ms += 1
                _seq = 0
        ms, seq = _last_ms, _seq

    value = (ms & 0xFFFFFFFFFFFF) << 80
    value |= 0x7 << 76
    value |= seq << 64
    value |= 0b10 << 62
    value |= secrets.randbits(62)
    return uuid.UUID(int=value)


def new_event_id() -> str:
    """Return a new audit event identifier as a string."""
    return str(uuid7())
