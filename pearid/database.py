"""
PearID Database Module
SQLite verification ledger: verification decisions, mint requests, attempt
history, the signing account's nonce counter and tracked metadata blobs.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from pearid.errors import (
    DuplicateApproval,
    InvalidTransition,
    MintRequestExists,
    MintRequestNotFound,
    StaleRecord,
    UnknownVerification,
)
from pearid.models import (
    Decision,
    MintAttempt,
    MintRequest,
    MintState,
    VerificationRecord,
    can_transition,
)
from pearid.fingerprint import validate_fingerprint

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS verifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL,
        decision TEXT NOT NULL CHECK (decision IN ('APPROVED', 'REJECTED')),
        evidence_cid TEXT NOT NULL,
        recipient TEXT,
        created_at REAL NOT NULL
    )
    """,
    # At most one APPROVED record per fingerprint, ever
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_verifications_approved
        ON verifications(fingerprint) WHERE decision = 'APPROVED'
    """,
    "CREATE INDEX IF NOT EXISTS idx_verifications_fingerprint ON verifications(fingerprint)",
    """
    CREATE TABLE IF NOT EXISTS mint_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL,
        verification_id INTEGER NOT NULL REFERENCES verifications(id),
        idempotency_key TEXT NOT NULL,
        metadata_cid TEXT,
        state TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        tx_handle TEXT,
        nonce INTEGER,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        next_attempt_at REAL,
        submitted_at REAL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    # At most one CONFIRMED request per fingerprint
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_mint_requests_confirmed
        ON mint_requests(fingerprint) WHERE state = 'CONFIRMED'
    """,
    # At most one live-or-confirmed request per fingerprint
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_mint_requests_active
        ON mint_requests(fingerprint) WHERE state != 'FAILED_TERMINAL'
    """,
    "CREATE INDEX IF NOT EXISTS idx_mint_requests_state ON mint_requests(state)",
    """
    CREATE TABLE IF NOT EXISTS mint_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id INTEGER NOT NULL REFERENCES mint_requests(id),
        attempt INTEGER NOT NULL,
        outcome TEXT NOT NULL,
        nonce INTEGER,
        tx_handle TEXT,
        error TEXT,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mint_attempts_request ON mint_attempts(request_id)",
    """
    CREATE TABLE IF NOT EXISTS account_nonces (
        account TEXT PRIMARY KEY,
        next_nonce INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blobs (
        cid TEXT PRIMARY KEY,
        request_id INTEGER NOT NULL REFERENCES mint_requests(id),
        created_at REAL NOT NULL,
        orphaned_at REAL,
        collected_at REAL
    )
    """,
]

# Columns a caller may change through update_request()/transition()
MUTABLE_COLUMNS = frozenset({
    "metadata_cid",
    "attempt_count",
    "last_error",
    "tx_handle",
    "nonce",
    "cancel_requested",
    "next_attempt_at",
    "submitted_at",
})


@contextmanager
def get_db_connection(db_path: str) -> Iterator[sqlite3.Connection]:
    """Context manager for database connections."""
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def write_transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Run the block inside BEGIN IMMEDIATE.

    The write lock is taken up front, so concurrent writers (for the same
    fingerprint or not) serialize instead of racing between read and write.
    """
    with get_db_connection(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")


def init_database(db_path: str) -> None:
    """Initialize the database and create tables if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")

    with write_transaction(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


class VerificationLedger:
    """Durable record of verification decisions and mint state per fingerprint."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_database(db_path)

    # ============ Verification records ============

    def record_verification(
        self,
        fingerprint: str,
        decision: Decision,
        evidence_cid: str,
        recipient: Optional[str] = None
    ) -> VerificationRecord:
        """
        Record one verification decision.

        Raises:
            DuplicateApproval: an APPROVED record already exists for the fingerprint
        """
        validate_fingerprint(fingerprint)
        decision = Decision(decision)
        if not evidence_cid:
            raise ValueError("evidence_cid is required")

        now = time.time()
        with write_transaction(self.db_path) as conn:
            if decision == Decision.APPROVED:
                row = conn.execute(
                    "SELECT id FROM verifications WHERE fingerprint = ? AND decision = 'APPROVED'",
                    (fingerprint,)
                ).fetchone()
                if row:
                    raise DuplicateApproval(
                        f"Fingerprint already has approved verification {row['id']}",
                        fingerprint=fingerprint,
                    )
            try:
                cursor = conn.execute("""
                    INSERT INTO verifications (fingerprint, decision, evidence_cid, recipient, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (fingerprint, decision.value, evidence_cid, recipient, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateApproval(str(e), fingerprint=fingerprint) from e

        return VerificationRecord(
            id=cursor.lastrowid,
            fingerprint=fingerprint,
            decision=decision,
            evidence_cid=evidence_cid,
            recipient=recipient,
            created_at=now,
        )

    def get_verification(self, verification_id: int) -> Optional[VerificationRecord]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM verifications WHERE id = ?", (verification_id,)
            ).fetchone()
        return VerificationRecord.from_row(row) if row else None

    def get_approved_verification(self, fingerprint: str) -> Optional[VerificationRecord]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM verifications WHERE fingerprint = ? AND decision = 'APPROVED'",
                (fingerprint,)
            ).fetchone()
        return VerificationRecord.from_row(row) if row else None

    def get_verifications(self, fingerprint: str) -> List[VerificationRecord]:
        """Get all verification records for a fingerprint, oldest first."""
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM verifications WHERE fingerprint = ? ORDER BY id ASC",
                (fingerprint,)
            ).fetchall()
        return [VerificationRecord.from_row(row) for row in rows]

    # ============ Mint requests ============

    def create_mint_request(self, verification_id: int, idempotency_key: str) -> MintRequest:
        """
        Create a PENDING mint request for an approved verification.

        Raises:
            UnknownVerification: the record is missing or not APPROVED
            MintRequestExists: a live or confirmed request already exists
        """
        now = time.time()
        with write_transaction(self.db_path) as conn:
            record = conn.execute(
                "SELECT * FROM verifications WHERE id = ?", (verification_id,)
            ).fetchone()
            if record is None:
                raise UnknownVerification(f"Verification {verification_id} does not exist")
            fingerprint = record["fingerprint"]
            if record["decision"] != Decision.APPROVED.value:
                raise UnknownVerification(
                    f"Verification {verification_id} is not approved",
                    fingerprint=fingerprint,
                )

            existing = conn.execute(
                "SELECT id, state FROM mint_requests WHERE fingerprint = ? AND state != ?",
                (fingerprint, MintState.FAILED_TERMINAL.value)
            ).fetchone()
            if existing:
                raise MintRequestExists(
                    f"Mint request {existing['id']} is {existing['state']}",
                    fingerprint=fingerprint,
                )

            try:
                cursor = conn.execute("""
                    INSERT INTO mint_requests (
                        fingerprint, verification_id, idempotency_key, state,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (fingerprint, verification_id, idempotency_key,
                      MintState.PENDING.value, now, now))
            except sqlite3.IntegrityError as e:
                raise MintRequestExists(str(e), fingerprint=fingerprint) from e

            row = conn.execute(
                "SELECT * FROM mint_requests WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()

        return MintRequest.from_row(row)

    def get_mint_state(self, fingerprint: str) -> Optional[MintRequest]:
        """Latest mint request for a fingerprint, or None."""
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM mint_requests WHERE fingerprint = ? ORDER BY id DESC LIMIT 1",
                (fingerprint,)
            ).fetchone()
        return MintRequest.from_row(row) if row else None

    def get_mint_requests(self, fingerprint: str) -> List[MintRequest]:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM mint_requests WHERE fingerprint = ? ORDER BY id ASC",
                (fingerprint,)
            ).fetchall()
        return [MintRequest.from_row(row) for row in rows]

    def unstaged_approvals(self) -> List[VerificationRecord]:
        """APPROVED records that never got a mint request, oldest first."""
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute("""
                SELECT v.* FROM verifications v
                LEFT JOIN mint_requests m ON m.verification_id = v.id
                WHERE v.decision = 'APPROVED' AND m.id IS NULL
                ORDER BY v.id ASC
            """).fetchall()
        return [VerificationRecord.from_row(row) for row in rows]

    def list_requests(
        self,
        states: Optional[Iterable[MintState]] = None,
        limit: int = 100
    ) -> List[MintRequest]:
        query = "SELECT * FROM mint_requests"
        params: list = []
        if states is not None:
            state_values = [MintState(s).value for s in states]
            if not state_values:
                return []
            query += f" WHERE state IN ({','.join('?' for _ in state_values)})"
            params.extend(state_values)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(int(limit))

        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [MintRequest.from_row(row) for row in rows]

    def state_counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in MintState}
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM mint_requests GROUP BY state"
            ).fetchall()
        for row in rows:
            counts[row["state"]] = row["n"]
        return counts

    def transition(self, request: MintRequest, new_state: MintState, **changes) -> MintRequest:
        """
        Compare-and-set a state transition.

        Raises:
            InvalidTransition: the edge is not in the state machine
            StaleRecord: the request changed since `request` was read
        """
        new_state = MintState(new_state)
        if not can_transition(request.state, new_state):
            raise InvalidTransition(
                f"{request.state.value} -> {new_state.value} is not allowed",
                fingerprint=request.fingerprint,
            )
        return self._compare_and_set(request, new_state, changes)

    def update_request(self, request: MintRequest, **changes) -> MintRequest:
        """Compare-and-set field changes without changing state."""
        return self._compare_and_set(request, request.state, changes)

    def _compare_and_set(self, request: MintRequest, new_state: MintState, changes: dict) -> MintRequest:
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        values = dict(changes)
        if "cancel_requested" in values:
            values["cancel_requested"] = int(bool(values["cancel_requested"]))

        now = time.time()
        assignments = ["state = ?", "version = version + 1", "updated_at = ?"]
        params: list = [new_state.value, now]
        for column, value in values.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([request.id, request.version])

        with write_transaction(self.db_path) as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE mint_requests SET {', '.join(assignments)} WHERE id = ? AND version = ?",
                    params
                )
            except sqlite3.IntegrityError as e:
                raise MintRequestExists(str(e), fingerprint=request.fingerprint) from e
            if cursor.rowcount != 1:
                raise StaleRecord(
                    f"Mint request {request.id} changed since version {request.version}",
                    fingerprint=request.fingerprint,
                )

            if new_state == MintState.FAILED_TERMINAL:
                conn.execute(
                    "UPDATE blobs SET orphaned_at = ? WHERE request_id = ? AND orphaned_at IS NULL",
                    (now, request.id)
                )

            row = conn.execute(
                "SELECT * FROM mint_requests WHERE id = ?", (request.id,)
            ).fetchone()

        updated = MintRequest.from_row(row)
        if new_state != request.state:
            logger.info(
                f"Mint {updated.fingerprint} (request {updated.id}): "
                f"{request.state.value} -> {new_state.value}"
            )
        return updated

    def require_request(self, fingerprint: str) -> MintRequest:
        request = self.get_mint_state(fingerprint)
        if request is None:
            raise MintRequestNotFound(f"No mint request for {fingerprint}", fingerprint=fingerprint)
        return request

    # ============ Attempt history ============

    def record_attempt(
        self,
        request_id: int,
        attempt: int,
        outcome: str,
        nonce: Optional[int] = None,
        tx_handle: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO mint_attempts (request_id, attempt, outcome, nonce, tx_handle, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (request_id, attempt, outcome, nonce, tx_handle, error, time.time()))

    def get_attempts(self, request_id: int) -> List[MintAttempt]:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM mint_attempts WHERE request_id = ? ORDER BY id ASC",
                (request_id,)
            ).fetchall()
        return [MintAttempt.from_row(row) for row in rows]

    # ============ Nonce counter ============

    def reserve_nonce(self, account: str, floor: int) -> int:
        """
        Atomically hand out the next nonce for `account`.

        The stored counter never goes below `floor` (the chain's pending
        transaction count), and advances by one per reservation.
        """
        with write_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT next_nonce FROM account_nonces WHERE account = ?", (account,)
            ).fetchone()
            stored = row["next_nonce"] if row else 0
            nonce = max(stored, int(floor))
            conn.execute("""
                INSERT INTO account_nonces (account, next_nonce) VALUES (?, ?)
                ON CONFLICT(account) DO UPDATE SET next_nonce = excluded.next_nonce
            """, (account, nonce + 1))
        return nonce

    def reset_nonce(self, account: str, next_nonce: int) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO account_nonces (account, next_nonce) VALUES (?, ?)
                ON CONFLICT(account) DO UPDATE SET next_nonce = excluded.next_nonce
            """, (account, int(next_nonce)))

    def release_nonce(self, account: str, nonce: int) -> bool:
        """
        Give back `nonce` if it is still the latest reservation.

        Returns False when a later nonce was handed out in the meantime; the
        gap is then closed by the next resync.
        """
        with write_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE account_nonces SET next_nonce = ? WHERE account = ? AND next_nonce = ?",
                (int(nonce), account, int(nonce) + 1)
            )
        return cursor.rowcount == 1

    def highest_unbroadcast_nonce(self, exclude_request_id: Optional[int] = None) -> Optional[int]:
        """Largest nonce held by a PENDING request that has no transaction handle yet."""
        with get_db_connection(self.db_path) as conn:
            row = conn.execute("""
                SELECT MAX(nonce) AS nonce FROM mint_requests
                WHERE state = 'PENDING' AND nonce IS NOT NULL AND tx_handle IS NULL
                  AND id != ?
            """, (exclude_request_id if exclude_request_id is not None else -1,)).fetchone()
        return row["nonce"]

    # ============ Metadata blobs ============

    def track_blob(self, cid: str, request_id: int) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO blobs (cid, request_id, created_at) VALUES (?, ?, ?)
                ON CONFLICT(cid) DO UPDATE SET request_id = excluded.request_id, orphaned_at = NULL
            """, (cid, request_id, time.time()))

    def orphaned_blobs(self, older_than: float) -> List[str]:
        """CIDs orphaned before `older_than` (epoch seconds) and not yet collected."""
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute("""
                SELECT cid FROM blobs
                WHERE orphaned_at IS NOT NULL AND orphaned_at <= ? AND collected_at IS NULL
                ORDER BY orphaned_at ASC
            """, (older_than,)).fetchall()
        return [row["cid"] for row in rows]

    def mark_blob_collected(self, cid: str) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE blobs SET collected_at = ? WHERE cid = ?", (time.time(), cid)
            )
