"""
Database module for the Reliance Engine.

Provides SQLite-based storage for sealed evidence (ciphertext, nonce,
tag and the governance shard) and for the optional SQLite audit ledger.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import DuplicateTransaction, EvidenceNotFound, EvidenceStoreError


class Database:
    """
    Thin wrapper over a SQLite file with thread-local connections.

    Connections are reused within the same thread; writers are serialized
    by SQLite itself (``BEGIN IMMEDIATE``).
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA busy_timeout=5000;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self):
        """
        Write transaction. Commits on success, rolls back on failure.
        ``BEGIN IMMEDIATE`` takes the write lock up front so read-then-write
        sequences (ledger tail, then insert) cannot interleave.
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self._get_connection().execute(sql, params).fetchall()

    def init_db(self) -> None:
        """
        Initialize database schema.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS evidence (
                transaction_id TEXT PRIMARY KEY,
                counterparty_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                encrypted_blob TEXT NOT NULL,
                nonce TEXT NOT NULL,
                auth_tag TEXT NOT NULL,
                shard_a TEXT NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_ledger (
                seq INTEGER PRIMARY KEY,
                entry_hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL,
                entry_json TEXT NOT NULL
            );""")

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


class EvidenceStore:
    """Sealed evidence keyed by transaction id. Shard B is never stored here."""

    def __init__(self, db: Database):
        self._db = db

    def put(
        self,
        transaction_id: str,
        counterparty_id: str,
        created_at: str,
        evidence: Dict[str, str]
    ) -> None:
        """
        Persist the governance half of a sealed record.

        Raises:
            DuplicateTransaction: transaction id already has evidence
            EvidenceStoreError: the database could not be written
        """
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT INTO evidence(transaction_id, counterparty_id, created_at, "
                    "encrypted_blob, nonce, auth_tag, shard_a) VALUES(?,?,?,?,?,?,?)",
                    (
                        transaction_id, counterparty_id, created_at,
                        evidence["encrypted_blob"], evidence["nonce"],
                        evidence["auth_tag"], evidence["shard_a"],
                    )
                )
        except sqlite3.IntegrityError:
            raise DuplicateTransaction(f"evidence already exists for {transaction_id}") from None
        except sqlite3.Error as e:
            raise EvidenceStoreError(str(e)) from e

    def get(self, transaction_id: str) -> Dict[str, Any]:
        """Full evidence record, shard A included. Raises EvidenceNotFound."""
        try:
            rows = self._db.query("SELECT * FROM evidence WHERE transaction_id=?", (transaction_id,))
        except sqlite3.Error as e:
            raise EvidenceStoreError(str(e)) from e
        if not rows:
            raise EvidenceNotFound(f"no evidence for {transaction_id}")
        return dict(rows[0])

    def describe(self, transaction_id: str) -> Dict[str, Any]:
        """Evidence metadata safe to hand out: no shard A."""
        record = self.get(transaction_id)
        record.pop("shard_a", None)
        return record

    def exists(self, transaction_id: str) -> bool:
        rows = self._db.query("SELECT 1 FROM evidence WHERE transaction_id=?", (transaction_id,))
        return bool(rows)

    def count(self) -> int:
        return self._db.query("SELECT COUNT(*) AS cnt FROM evidence")[0]["cnt"]


def last_ledger_row(db: Database, conn: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
    """Most recent row of the SQLite ledger table."""
    sql = "SELECT seq, entry_hash FROM audit_ledger ORDER BY seq DESC LIMIT 1"
    if conn is not None:
        return conn.execute(sql).fetchone()
    rows = db.query(sql)
    return rows[0] if rows else None
