"""
Write-ahead log for outbound notifications.

An event is accepted only once its ENQUEUED record is flushed and fsynced
here. Later records (RETRY_FAILED, DELIVERED, DEAD_LETTER) fold onto it,
so replaying the file after a crash yields exactly the events that still
need delivery.
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import WalWriteError
from .logging_config import event_log
from .util import now_epoch

logger = logging.getLogger(__name__)

ENQUEUED = "ENQUEUED"
RETRY_FAILED = "RETRY_FAILED"
DELIVERED = "DELIVERED"
DEAD_LETTER = "DEAD_LETTER"


@dataclass(frozen=True)
class OutboundEvent:
    event_id: str
    destination: str
    payload: Dict[str, Any]
    signature: str
    enqueued_at: float
    retry_count: int = 0
    next_attempt_at: float = 0.0
    status: str = "PENDING"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboundEvent":
        return cls(**{name: data[name] for name in cls.__dataclass_fields__ if name in data})


class WriteAheadLog:
    """Append-only JSONL file, one record per line."""

    def __init__(
        self,
        path: Union[str, Path],
        max_write_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        clock: Callable[[], float] = now_epoch,
    ):
        self.path = Path(path)
        self.max_write_attempts = max_write_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def append(self, record: Dict[str, Any]) -> None:
        """
        Durably append one record.

        Raises:
            WalWriteError: every write attempt failed. The event is not accepted.
        """
        line = json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n"
        last_error: Optional[OSError] = None
        with self._lock:
            for attempt in range(1, self.max_write_attempts + 1):
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(line)
                        f.flush()
                        os.fsync(f.fileno())
                    return
                except OSError as e:
                    last_error = e
                    logger.warning("WAL write attempt %d/%d failed: %s", attempt, self.max_write_attempts, e)
                    if attempt < self.max_write_attempts:
                        time.sleep(self.retry_backoff_seconds * attempt)

        event_id = record.get("event_id") or record.get("event", {}).get("event_id", "")
        event_log.wal_write_failed(event_id, str(last_error))
        raise WalWriteError(f"write-ahead log unavailable: {last_error}") from last_error

    def record_enqueued(self, event: OutboundEvent) -> None:
        self.append({"type": ENQUEUED, "at": self._clock(), "event_id": event.event_id, "event": event.to_dict()})

    def record_retry_failed(self, event: OutboundEvent, reason: str) -> None:
        self.append({
            "type": RETRY_FAILED,
            "at": self._clock(),
            "event_id": event.event_id,
            "retry_count": event.retry_count,
            "next_attempt_at": event.next_attempt_at,
            "reason": reason,
        })

    def record_delivered(self, event_id: str) -> None:
        self.append({"type": DELIVERED, "at": self._clock(), "event_id": event_id})

    def record_dead_letter(self, event: OutboundEvent, reason: str) -> None:
        self.append({
            "type": DEAD_LETTER,
            "at": self._clock(),
            "event_id": event.event_id,
            "retry_count": event.retry_count,
            "reason": reason,
        })

    def read_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # a torn last line is what a crash mid-append leaves behind
                    logger.warning("Skipping malformed WAL record at line %d", line_no)
        return records

    def replay(self) -> List[OutboundEvent]:
        """Events still awaiting delivery, ordered by next attempt time."""
        pending: Dict[str, OutboundEvent] = {}
        for record in self.read_records():
            kind = record.get("type")
            event_id = record.get("event_id")
            if kind == ENQUEUED and "event" in record:
                pending[event_id] = OutboundEvent.from_dict(record["event"])
            elif kind == RETRY_FAILED and event_id in pending:
                pending[event_id] = replace(
                    pending[event_id],
                    retry_count=record["retry_count"],
                    next_attempt_at=record["next_attempt_at"],
                    status="RETRY",
                )
            elif kind in (DELIVERED, DEAD_LETTER):
                pending.pop(event_id, None)
        return sorted(pending.values(), key=lambda e: e.next_attempt_at)

    def checkpoint(self) -> int:
        """
        Atomically rewrite the log keeping only pending events.

        Returns:
            Number of events carried over.
        """
        with self._lock:
            pending = self.replay()
            tmp = self.path.with_name(self.path.name + ".tmp")
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                for event in pending:
                    record = {"type": ENQUEUED, "at": self._clock(), "event_id": event.event_id, "event": event.to_dict()}
                    f.write(json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        logger.info("WAL checkpoint kept %d pending events", len(pending))
        return len(pending)
