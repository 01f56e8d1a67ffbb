import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import config
from .db import Database, last_ledger_row

logger = logging.getLogger(__name__)

# (seq, entry_hash) of the newest persisted entry, or None for an empty ledger
ChainHead = Optional[Tuple[int, str]]
EntryBuilder = Callable[[ChainHead], Dict[str, Any]]


class LedgerSink:
    """
    Durable home of the audit ledger.

    ``write_entry`` is the single serialization point of a store: it reads
    the chain head, lets the caller build the next entry against it and
    persists that entry before anyone else can append.
    """

    def write_entry(self, build: EntryBuilder) -> Dict[str, Any]:
        raise NotImplementedError

    def read_entries(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def check(self) -> None:
        """Raise if the sink cannot currently accept writes."""
        raise NotImplementedError


class JsonlLedgerSink(LedgerSink):
    """Newline-delimited JSON file, one self-describing entry per line, fsynced per append."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.torn_path = self.path.with_name(self.path.name + ".torn")
        self._lock = threading.Lock()
        self._head: ChainHead = None
        self._head_loaded = False

    def _load_head(self) -> ChainHead:
        """
        Newest complete entry on disk.

        A crash mid-append can leave one partial line at the end of the file.
        That tail is copied to ``<ledger>.torn`` and cut off so the next entry
        chains onto the last complete one. More than one unreadable line after
        the last good entry is not a torn write and raises ValueError.
        """
        if not self.path.exists():
            return None
        with open(self.path, "rb") as f:
            data = f.read()

        head: ChainHead = None
        good_end = offset = 0
        for raw in data.splitlines(keepends=True):
            offset += len(raw)
            if not raw.strip():
                continue
            try:
                entry = json.loads(raw)
                head = (int(entry["seq"]), entry["hash"])
            except (ValueError, KeyError, TypeError):
                continue
            good_end = offset

        tail = data[good_end:]
        if tail.strip():
            if b"\n" in tail.strip():
                raise ValueError(f"{self.path}: unreadable entries after seq {head[0] if head else 0}")
            self._cut_torn_tail(tail, good_end)
        elif good_end and not data.endswith(b"\n"):
            with open(self.path, "ab") as f:
                f.write(b"\n")
                f.flush()
                os.fsync(f.fileno())
        return head

    def _cut_torn_tail(self, tail: bytes, good_end: int) -> None:
        with open(self.torn_path, "ab") as f:
            f.write(tail.rstrip(b"\n") + b"\n")
            f.flush()
            os.fsync(f.fileno())
        with open(self.path, "r+b") as f:
            f.truncate(good_end)
            f.flush()
            os.fsync(f.fileno())
        logger.error("Torn final line of %s (%d bytes) moved to %s", self.path, len(tail), self.torn_path)

    def write_entry(self, build: EntryBuilder) -> Dict[str, Any]:
        with self._lock:
            try:
                if not self._head_loaded:
                    self._head = self._load_head()
                    self._head_loaded = True
                entry = build(self._head)
                line = json.dumps(entry, sort_keys=True, ensure_ascii=False) + "\n"
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except Exception:
                # the line may be partly or wholly on disk; re-read the head before the next append
                self._head_loaded = False
                raise
            self._head = (entry["seq"], entry["hash"])
            return entry

    def read_entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    entries.append({"_line": line_no, "_error": "malformed JSON"})
        return entries

    def check(self) -> None:
        """Re-read (and repair) the head, then prove a synced write lands next to the ledger."""
        with self._lock:
            self._head_loaded = False
            self._head = self._load_head()
            self._head_loaded = True
            self.path.parent.mkdir(parents=True, exist_ok=True)
            marker = self.path.with_name(self.path.name + ".writecheck")
            with open(marker, "wb") as f:
                f.write(b"ok\n")
                f.flush()
                os.fsync(f.fileno())
            marker.unlink()
            with open(self.path, "ab"):
                pass


class SqliteHashChainLog(LedgerSink):
    """Ledger rows in the service database; the head is read inside the write transaction."""

    def __init__(self, db: Database):
        self._db = db

    def write_entry(self, build: EntryBuilder) -> Dict[str, Any]:
        with self._db.transaction() as conn:
            row = last_ledger_row(self._db, conn)
            head = (row["seq"], row["entry_hash"]) if row else None
            entry = build(head)
            conn.execute(
                "INSERT INTO audit_ledger(seq, entry_hash, previous_hash, entry_json) VALUES(?,?,?,?)",
                (entry["seq"], entry["hash"], entry["previous_hash"], json.dumps(entry, sort_keys=True))
            )
        return entry

    def read_entries(self) -> List[Dict[str, Any]]:
        rows = self._db.query("SELECT entry_json FROM audit_ledger ORDER BY seq ASC")
        return [json.loads(row["entry_json"]) for row in rows]

    def check(self) -> None:
        self._db.query("SELECT 1")


class S3ObjectLockLog(LedgerSink):
    """Writes each ledger entry as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled. Single writer per prefix.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF", client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = client
        self._lock = threading.Lock()
        self._head: ChainHead = None
        self._head_loaded = False

    def _s3(self):
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 Object Lock ledger. Install with: pip install boto3") from e
            self._client = boto3.client("s3")
        return self._client

    def _keys(self) -> List[str]:
        keys = []
        paginator = self._s3().get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return sorted(keys)

    def _get(self, key: str) -> Dict[str, Any]:
        body = self._s3().get_object(Bucket=self.bucket, Key=key)["Body"].read()
        return json.loads(body.decode("utf-8"))

    def write_entry(self, build: EntryBuilder) -> Dict[str, Any]:
        from datetime import datetime, timedelta, timezone

        with self._lock:
            try:
                if not self._head_loaded:
                    self._head = None
                    keys = self._keys()
                    if keys:
                        last = self._get(keys[-1])
                        self._head = (int(last["seq"]), last["hash"])
                    self._head_loaded = True
                entry = build(self._head)
                # zero-padded so lexical key order is ledger order
                key = f"{self.prefix}{entry['seq']:012d}.json"
                retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
                self._s3().put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=json.dumps(entry, sort_keys=True).encode("utf-8"),
                    ContentType="application/json",
                    ObjectLockMode="COMPLIANCE",
                    ObjectLockRetainUntilDate=retain_until,
                    ObjectLockLegalHoldStatus=self.legal_hold
                )
            except Exception:
                # the object may have landed; list the bucket again before the next append
                self._head_loaded = False
                raise
            self._head = (entry["seq"], entry["hash"])
            return entry

    def read_entries(self) -> List[Dict[str, Any]]:
        return [self._get(key) for key in self._keys()]

    def check(self) -> None:
        self._s3().head_bucket(Bucket=self.bucket)


def get_ledger_sink(db: Optional[Database] = None) -> LedgerSink:
    backend = config.LEDGER_BACKEND
    if backend == "s3_object_lock":
        return S3ObjectLockLog(
            bucket=config.S3_BUCKET,
            prefix=config.S3_PREFIX,
            retention_days=config.S3_RETENTION_DAYS,
            legal_hold=config.S3_LEGAL_HOLD,
        )
    if backend == "sqlite":
        if db is None:
            raise ValueError("sqlite ledger backend requires a Database")
        return SqliteHashChainLog(db)
    return JsonlLedgerSink(config.LEDGER_PATH)
