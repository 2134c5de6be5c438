"""
Stream store for cl-stream.

SQLite persistence for streams, claims, and vault deposits.

Thread Safety:
- Thread-local connections (one sqlite3 connection per thread)
- Per-stream locks serialize read-then-write of a stream's commitment;
  different streams never share a lock
"""

import sqlite3
import threading
from typing import Dict, List, Optional

from .streams import (
    ClaimRecord,
    Stream,
    VaultRecord,
    now_iso,
    VALID_STATUSES,
)


class StreamDatabase:
    """SQLite-backed Stream Store."""

    def __init__(self, db_path: str, plugin):
        """
        Args:
            db_path: Path to the sqlite file (":memory:" is not supported,
                since each thread opens its own connection)
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = db_path
        self.plugin = plugin
        self._local = threading.local()
        self._stream_locks: Dict[str, threading.Lock] = {}
        self._stream_locks_guard = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def initialize(self):
        """Create stream tables."""
        conn = self._get_connection()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS streams (
                id TEXT PRIMARY KEY,
                vault_id TEXT,
                charm_id TEXT,
                beneficiary TEXT NOT NULL,
                total_amount_sats INTEGER NOT NULL,
                rate_sats_per_sec INTEGER NOT NULL,
                start_unix INTEGER NOT NULL,
                cliff_unix INTEGER NOT NULL,
                revocation_pubkey TEXT NOT NULL,
                streamed_commitment_sats INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS claims (
                id TEXT PRIMARY KEY,
                stream_id TEXT NOT NULL,
                amount_sats INTEGER NOT NULL,
                proof TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                seq INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (stream_id) REFERENCES streams(id)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_claims_stream
            ON claims(stream_id, created_at)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS vaults (
                id TEXT PRIMARY KEY,
                amount_sats INTEGER NOT NULL,
                beneficiary TEXT NOT NULL,
                policy TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        self.plugin.log("cl-stream: stream tables initialized")

    def ping(self) -> bool:
        """Raises sqlite3.Error if the store is unusable."""
        self._get_connection().execute("SELECT 1").fetchone()
        return True

    # =========================================================================
    # PER-STREAM LOCKS
    # =========================================================================

    def stream_lock(self, stream_id: str) -> threading.Lock:
        """Lock guarding all read-then-write of one stream's commitment."""
        with self._stream_locks_guard:
            lock = self._stream_locks.get(stream_id)
            if lock is None:
                lock = threading.Lock()
                self._stream_locks[stream_id] = lock
            return lock

    # =========================================================================
    # STREAMS
    # =========================================================================

    def create_stream(self, stream: Stream) -> None:
        now = now_iso()
        stream.created_at = stream.created_at or now
        stream.updated_at = stream.updated_at or now
        self._get_connection().execute("""
            INSERT INTO streams (
                id, vault_id, charm_id, beneficiary, total_amount_sats,
                rate_sats_per_sec, start_unix, cliff_unix, revocation_pubkey,
                streamed_commitment_sats, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            stream.id, stream.vault_id, stream.charm_id, stream.beneficiary,
            stream.total_amount_sats, stream.rate_sats_per_sec,
            stream.start_unix, stream.cliff_unix, stream.revocation_pubkey,
            stream.streamed_commitment_sats, stream.status,
            stream.created_at, stream.updated_at,
        ))

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        row = self._get_connection().execute(
            "SELECT * FROM streams WHERE id = ?", (stream_id,)
        ).fetchone()
        return Stream.from_row(row) if row else None

    def list_streams(self) -> List[Stream]:
        rows = self._get_connection().execute(
            "SELECT * FROM streams ORDER BY created_at DESC"
        ).fetchall()
        return [Stream.from_row(row) for row in rows]

    def update_commitment(self, stream_id: str, commitment_sats: int,
                          status: Optional[str] = None) -> bool:
        """Set the commitment (and status, when given). Returns False if no row."""
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"invalid stream status: {status}")
        cursor = self._get_connection().execute("""
            UPDATE streams
            SET streamed_commitment_sats = ?,
                status = COALESCE(?, status),
                updated_at = ?
            WHERE id = ?
        """, (commitment_sats, status, now_iso(), stream_id))
        return cursor.rowcount > 0

    def attach_charm_id(self, stream_id: str, charm_id: str) -> bool:
        cursor = self._get_connection().execute("""
            UPDATE streams SET charm_id = ?, updated_at = ? WHERE id = ?
        """, (charm_id, now_iso(), stream_id))
        return cursor.rowcount > 0

    # =========================================================================
    # CLAIMS
    # =========================================================================

    def append_claim(self, claim: ClaimRecord) -> None:
        claim.created_at = claim.created_at or now_iso()
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO claims (id, stream_id, amount_sats, proof, verified, created_at, seq)
            VALUES (?, ?, ?, ?, ?, ?,
                    (SELECT COALESCE(MAX(seq), 0) + 1 FROM claims WHERE stream_id = ?))
        """, (
            claim.id, claim.stream_id, claim.amount_sats, claim.proof,
            1 if claim.verified else 0, claim.created_at, claim.stream_id,
        ))

    def commit_claim(self, stream_id: str, commitment_sats: int, status: str,
                     claim: ClaimRecord) -> bool:
        """
        Advance a stream's commitment and append its claim record in one
        transaction. Either both land or neither does. Returns False (and
        writes nothing) if the stream row does not exist.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"invalid stream status: {status}")
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute("""
                UPDATE streams
                SET streamed_commitment_sats = ?,
                    status = ?,
                    updated_at = ?
                WHERE id = ?
            """, (commitment_sats, status, now_iso(), stream_id))
            if cursor.rowcount == 0:
                conn.execute("ROLLBACK")
                return False
            self.append_claim(claim)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return True

    def list_claims(self, stream_id: str) -> List[ClaimRecord]:
        """Claims for a stream, newest first."""
        rows = self._get_connection().execute("""
            SELECT * FROM claims WHERE stream_id = ?
            ORDER BY created_at DESC, seq DESC
        """, (stream_id,)).fetchall()
        return [ClaimRecord.from_row(row) for row in rows]

    # =========================================================================
    # VAULTS
    # =========================================================================

    def upsert_vault(self, vault: VaultRecord) -> None:
        vault.created_at = vault.created_at or now_iso()
        self._get_connection().execute("""
            INSERT INTO vaults (id, amount_sats, beneficiary, policy, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                amount_sats = excluded.amount_sats,
                beneficiary = excluded.beneficiary,
                policy = excluded.policy
        """, (vault.id, vault.amount_sats, vault.beneficiary, vault.policy,
              vault.created_at))

    def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        row = self._get_connection().execute(
            "SELECT * FROM vaults WHERE id = ?", (vault_id,)
        ).fetchone()
        if not row:
            return None
        return VaultRecord(
            id=row["id"],
            amount_sats=int(row["amount_sats"]),
            beneficiary=row["beneficiary"],
            policy=row["policy"],
            created_at=row["created_at"],
        )
