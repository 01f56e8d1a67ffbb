"""
Shared primitives: the canonical byte form that every hash, HMAC and
signature in the engine is computed over, plus clock and id helpers.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Union

BytesLike = Union[bytes, str]


def _as_bytes(value: BytesLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def canonicalize(obj: Any) -> bytes:
    """
    Canonical JSON bytes: sorted keys, no insignificant whitespace, UTF-8.

    Ledger hashes, webhook signatures and liveness proofs are all computed
    over this form, so two parties serializing the same object agree on
    the bytes. Raises TypeError for values JSON cannot represent.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_hex(data: BytesLike) -> str:
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def hmac_sha256_hex(secret: BytesLike, data: BytesLike) -> str:
    return hmac.new(_as_bytes(secret), _as_bytes(data), hashlib.sha256).hexdigest()


def constant_time_compare(a: BytesLike, b: BytesLike) -> bool:
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"))


def now_epoch() -> float:
    """Wall clock in fractional epoch seconds; the default injectable clock."""
    return time.time()


def utc_rfc3339(ts_epoch: float) -> str:
    """Epoch seconds as RFC 3339 UTC with millisecond precision, e.g. 2024-05-01T10:00:00.000Z."""
    dt = datetime.fromtimestamp(ts_epoch, tz=timezone.utc)
    return f"{dt:%Y-%m-%dT%H:%M:%S}.{dt.microsecond // 1000:03d}Z"


def generate_id(n_bytes: int = 16) -> str:
    """Random hex id, 2 * n_bytes characters."""
    return secrets.token_hex(n_bytes)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """Token reference for logs: everything but the last few characters starred."""
    hidden = max(len(value) - visible_chars, 0) if len(value) > visible_chars else len(value)
    return "*" * hidden + value[hidden:]
