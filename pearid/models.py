"""
PearID Domain Models
Verification records, mint requests and the mint state machine.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MintState(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_TERMINAL = "FAILED_TERMINAL"

    @property
    def is_terminal(self) -> bool:
        return self in (MintState.CONFIRMED, MintState.FAILED_TERMINAL)


# Allowed state machine edges
TRANSITIONS: Dict[MintState, FrozenSet[MintState]] = {
    MintState.PENDING: frozenset({
        MintState.SUBMITTED,
        MintState.FAILED_RETRYABLE,
        MintState.FAILED_TERMINAL,
        MintState.CONFIRMED,  # "already verified" revert at broadcast
    }),
    MintState.SUBMITTED: frozenset({
        MintState.CONFIRMED,
        MintState.FAILED_RETRYABLE,
        MintState.FAILED_TERMINAL,
    }),
    MintState.FAILED_RETRYABLE: frozenset({
        MintState.PENDING,
        MintState.FAILED_TERMINAL,
    }),
    MintState.CONFIRMED: frozenset(),
    MintState.FAILED_TERMINAL: frozenset(),
}


def can_transition(current: MintState, target: MintState) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class VerificationRecord:
    """One verification attempt. Immutable once written."""
    id: int
    fingerprint: str
    decision: Decision
    evidence_cid: str
    created_at: float
    recipient: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.decision == Decision.APPROVED

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VerificationRecord":
        return cls(
            id=row["id"],
            fingerprint=row["fingerprint"],
            decision=Decision(row["decision"]),
            evidence_cid=row["evidence_cid"],
            created_at=row["created_at"],
            recipient=row["recipient"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "decision": self.decision.value,
            "evidence_cid": self.evidence_cid,
            "recipient": self.recipient,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class MintRequest:
    """
    Mint state for one approved verification.

    `version` is the optimistic concurrency token; every write through the
    ledger must present the version it read.
    """
    id: int
    fingerprint: str
    verification_id: int
    idempotency_key: str
    state: MintState
    attempt_count: int = 0
    version: int = 0
    metadata_cid: Optional[str] = None
    last_error: Optional[str] = None
    tx_handle: Optional[str] = None
    nonce: Optional[int] = None
    cancel_requested: bool = False
    next_attempt_at: Optional[float] = None
    submitted_at: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MintRequest":
        return cls(
            id=row["id"],
            fingerprint=row["fingerprint"],
            verification_id=row["verification_id"],
            idempotency_key=row["idempotency_key"],
            state=MintState(row["state"]),
            attempt_count=row["attempt_count"],
            version=row["version"],
            metadata_cid=row["metadata_cid"],
            last_error=row["last_error"],
            tx_handle=row["tx_handle"],
            nonce=row["nonce"],
            cancel_requested=bool(row["cancel_requested"]),
            next_attempt_at=row["next_attempt_at"],
            submitted_at=row["submitted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "verification_id": self.verification_id,
            "idempotency_key": self.idempotency_key,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "version": self.version,
            "metadata_cid": self.metadata_cid,
            "last_error": self.last_error,
            "tx_handle": self.tx_handle,
            "nonce": self.nonce,
            "cancel_requested": self.cancel_requested,
            "next_attempt_at": self.next_attempt_at,
            "submitted_at": self.submitted_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class MintAttempt:
    """One submission attempt, kept for operator history."""
    request_id: int
    attempt: int
    outcome: str
    nonce: Optional[int] = None
    tx_handle: Optional[str] = None
    error: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MintAttempt":
        return cls(
            request_id=row["request_id"],
            attempt=row["attempt"],
            outcome=row["outcome"],
            nonce=row["nonce"],
            tx_handle=row["tx_handle"],
            error=row["error"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome,
            "nonce": self.nonce,
            "tx_handle": self.tx_handle,
            "error": self.error,
            "created_at": self.created_at,
        }


class TxStatusKind(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class TxStatus:
    """Chain-side status of a broadcast transaction."""
    kind: TxStatusKind
    depth: int = 0
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "TxStatus":
        return cls(TxStatusKind.PENDING)

    @classmethod
    def confirmed(cls, depth: int) -> "TxStatus":
        return cls(TxStatusKind.CONFIRMED, depth=depth)

    @classmethod
    def reverted(cls, reason: str) -> "TxStatus":
        return cls(TxStatusKind.REVERTED, reason=reason)

    @classmethod
    def unknown(cls) -> "TxStatus":
        return cls(TxStatusKind.UNKNOWN)


@dataclass(frozen=True)
class MintCall:
    """Call data for the contract's mintVerified(to, idempotencyKey, tokenURI)."""
    fingerprint: str
    idempotency_key: str
    token_uri: str
    recipient: Optional[str] = None
