"""Canonical JSON for hashing record tag sets and run digests.

Equal values always encode to the same bytes: object keys sorted, compact
separators, strings in NFC, ``None`` members dropped from objects, and only
integers in the signed 64-bit range allowed as numbers.

Every stored ``tag_key`` depends on this encoding; changing it requires a bump
of ``Tagstash.tags.TAG_NORMALIZATION_VERSION``.
"""

from __future__ import annotations

import hashlib
import json
import unicodedata
from collections.abc import Mapping
from typing import Any

_INT64 = range(-(2**63), 2**63)


class CanonicalJSONError(ValueError):
    """A value that has no canonical JSON form."""


def _nfc(text: str) -> str:
    return unicodedata.normalize("NFC", text)


def _canonicalize(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _nfc(value)
    if isinstance(value, int):
        if value not in _INT64:
            raise CanonicalJSONError(f"integer {value} does not fit in 64 bits")
        return value
    if isinstance(value, list | tuple):
        return [_canonicalize(item) for item in value]
    if isinstance(value, Mapping):
        return {
            _nfc(str(key)): _canonicalize(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, float):
        raise CanonicalJSONError(f"floats have no canonical form: {value!r}")
    raise CanonicalJSONError(f"cannot encode {type(value).__name__} as canonical JSON")


def canonical_json_bytes(payload: Mapping[str, Any] | None) -> bytes:
    """UTF-8 canonical encoding of ``payload``; ``None`` encodes as ``{}``."""
    text = json.dumps(
        _canonicalize(payload if payload is not None else {}),
        ensure_ascii=False,
        allow_nan=False,
        sort_keys=True,
        separators=(",", ":"),
    )
    return text.encode("utf-8")


def compute_canonical_hash(payload: Mapping[str, Any] | None) -> bytes:
    return hashlib.sha256(canonical_json_bytes(payload)).digest()
