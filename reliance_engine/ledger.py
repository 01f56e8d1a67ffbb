"""
Tamper-evident audit ledger.

Every event is sanitized (PII hashed, secrets redacted) before it is
built into an entry, so nothing sensitive ever reaches the sink. Each
entry embeds the hash of its predecessor and its own hash over the
canonical JSON of every other field.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import LedgerWriteError
from .log_backends import ChainHead, LedgerSink
from .logging_config import event_log
from .security import sanitize
from .util import canonicalize, now_epoch, sha256_hex, utc_rfc3339

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


@dataclass(frozen=True)
class AuditEntry:
    seq: int
    previous_hash: str
    timestamp: str
    transaction_id: str
    counterparty_id: Optional[str]
    fund_id: Optional[str]
    admin_id: Optional[str]
    action: str
    status: str
    data: Any
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, entry: Dict[str, Any]) -> "AuditEntry":
        return cls(**{name: entry.get(name) for name in cls.__dataclass_fields__})


def entry_hash(entry: Dict[str, Any]) -> str:
    """SHA-256 over the canonical serialization of every field except ``hash``."""
    body = {k: v for k, v in entry.items() if k != "hash"}
    return sha256_hex(canonicalize(body))


class AuditLedger:
    """
    Append-only, hash-chained event ledger over a LedgerSink.

    A failed write marks the ledger unhealthy; callers consult
    ``ensure_writable`` before accepting new work.
    """

    def __init__(self, sink: LedgerSink, clock: Callable[[], float] = now_epoch):
        self._sink = sink
        self._clock = clock
        self._lock = threading.Lock()
        self._healthy = True
        self._last_hash: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self._healthy

    @property
    def last_hash(self) -> Optional[str]:
        """Hash of the newest entry this process appended."""
        return self._last_hash

    def append(
        self,
        transaction_id: str,
        counterparty_id: Optional[str],
        action: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
        fund_id: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> AuditEntry:
        """
        Sanitize, chain and persist one event.

        Raises:
            LedgerWriteError: the sink rejected the write. Logged CRITICAL.
            TypeError: payload is not JSON-serializable.
        """
        data = sanitize(payload or {})
        canonicalize(data)
        timestamp = utc_rfc3339(self._clock())

        def build(head: ChainHead) -> Dict[str, Any]:
            seq, previous_hash = (head[0] + 1, head[1]) if head else (1, GENESIS_HASH)
            entry = {
                "seq": seq,
                "previous_hash": previous_hash,
                "timestamp": timestamp,
                "transaction_id": transaction_id,
                "counterparty_id": counterparty_id,
                "fund_id": fund_id,
                "admin_id": admin_id,
                "action": action,
                "status": status,
                "data": data,
            }
            entry["hash"] = entry_hash(entry)
            return entry

        try:
            written = self._sink.write_entry(build)
        except Exception as e:
            with self._lock:
                self._healthy = False
            event_log.ledger_write_failed(transaction_id, action, str(e))
            raise LedgerWriteError(f"audit ledger write failed: {e}") from e

        with self._lock:
            self._last_hash = written["hash"]
            self._healthy = True
        return AuditEntry.from_dict(written)

    def ensure_writable(self) -> bool:
        """
        Healthy ledgers return True at once. An unhealthy one re-checks its
        sink and recovers if the check passes.
        """
        if self._healthy:
            return True
        try:
            self._sink.check()
        except Exception as e:
            logger.error("Audit ledger still unavailable: %s", e)
            return False
        with self._lock:
            self._healthy = True
        logger.warning("Audit ledger sink recovered")
        return True

    def entries(self) -> List[Dict[str, Any]]:
        return self._sink.read_entries()

    def verify(self) -> Tuple[bool, List[str]]:
        return verify_chain(self.entries())


def verify_chain(entries: List[Dict[str, Any]]) -> Tuple[bool, List[str]]:
    """
    Verify a ledger export.

    Each entry's hash is recomputed and compared with the stored one, and
    each ``previous_hash`` is compared with the *recomputed* hash of the
    entry before it (genesis for the first). Editing entry n therefore
    shows up as a mismatch at n and a break at n+1. Every problem found is
    reported; nothing raises.
    """
    errors: List[str] = []
    prev_hash: Optional[str] = GENESIS_HASH
    prev_seq: Any = None

    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or "hash" not in entry or "previous_hash" not in entry:
            line = entry.get("_line") if isinstance(entry, dict) else None
            errors.append(f"entry at position {index + 1}: malformed entry" + (f" (line {line})" if line else ""))
            prev_hash, prev_seq = None, None
            continue

        seq = entry.get("seq", index + 1)
        try:
            recomputed = entry_hash(entry)
        except (TypeError, ValueError) as e:
            errors.append(f"entry {seq}: cannot be serialized ({e})")
            prev_hash, prev_seq = None, seq
            continue

        if recomputed != entry["hash"]:
            errors.append(f"entry {seq}: hash mismatch (stored {str(entry['hash'])[:16]}..., computed {recomputed[:16]}...)")

        if prev_hash is not None and entry["previous_hash"] != prev_hash:
            if index == 0:
                errors.append(f"entry {seq}: chain break (previous_hash is not the genesis hash)")
            else:
                errors.append(f"entry {seq}: chain break (previous_hash does not match entry {prev_seq})")

        if isinstance(prev_seq, int) and isinstance(seq, int) and seq != prev_seq + 1:
            errors.append(f"entry {seq}: sequence gap (follows entry {prev_seq})")

        prev_hash, prev_seq = recomputed, seq

    return not errors, errors
