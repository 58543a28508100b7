"""Import session identifiers: ``import-`` followed by a ULID.

A ULID is 48 bits of millisecond timestamp followed by 80 random bits,
written as 26 Crockford base32 characters, so ids sort by creation time.
"""

from __future__ import annotations

import secrets
import time
from typing import Final

CROCKFORD: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
SESSION_ID_PREFIX: Final[str] = "import-"
ULID_LENGTH: Final[int] = 26

_TIMESTAMP_MASK = (1 << 48) - 1
_CROCKFORD_SET = frozenset(CROCKFORD)


def generate_ulid(ts_ms: int | None = None) -> str:
    stamp = (int(time.time() * 1000) if ts_ms is None else ts_ms) & _TIMESTAMP_MASK
    value = (stamp << 80) | secrets.randbits(80)
    out = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        out.append(CROCKFORD[digit])
    return "".join(reversed(out))


def is_ulid(value: str) -> bool:
    # 128 bits in 26 chars leaves 2 spare bits, so the first char is at most '7'
    return (
        len(value) == ULID_LENGTH
        and value[0] in "01234567"
        and all(ch in _CROCKFORD_SET for ch in value)
    )


def new_session_id(ts_ms: int | None = None) -> str:
    return SESSION_ID_PREFIX + generate_ulid(ts_ms)


def is_session_id(value: str) -> bool:
    return value.startswith(SESSION_ID_PREFIX) and is_ulid(value[len(SESSION_ID_PREFIX) :])
