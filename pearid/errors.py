"""
PearID Error Taxonomy
Exceptions raised by the ledger, the external clients and the mint orchestrator.
"""

from typing import Iterable, Optional


class BridgeError(Exception):
    """Base class for all bridge errors. `code` is stable and machine readable."""

    code = "bridge_error"

    def __init__(self, message: str, fingerprint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.fingerprint = fingerprint

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "fingerprint": self.fingerprint}


# ============ Ledger ============

class InvalidFingerprint(BridgeError):
    code = "invalid_fingerprint"


class DuplicateApproval(BridgeError):
    """An APPROVED verification record already exists for the fingerprint."""

    code = "duplicate_approval"


class UnknownVerification(BridgeError):
    """A mint request referenced a missing, foreign or non-approved verification."""

    code = "unknown_verification"


class MintRequestExists(BridgeError):
    """A live or confirmed mint request already exists for the fingerprint."""

    code = "mint_request_exists"


class MintRequestNotFound(BridgeError):
    code = "mint_request_not_found"


class StaleRecord(BridgeError):
    """Compare-and-set lost: the record changed since it was read."""

    code = "stale_record"


class InvalidTransition(BridgeError):
    code = "invalid_transition"


class NotCancellable(BridgeError):
    code = "not_cancellable"


class NotRetryable(BridgeError):
    code = "not_retryable"


# ============ Chain ============

class TransientChainError(BridgeError):
    """
    Recoverable chain failure (timeout, nonce conflict, underpriced gas, network).

    `kind` is one of: timeout, nonce, underpriced, network, stuck.
    """

    code = "transient_chain_error"

    def __init__(self, message: str, kind: str = "network", fingerprint: Optional[str] = None):
        super().__init__(message, fingerprint)
        self.kind = kind

    @property
    def is_nonce_conflict(self) -> bool:
        return self.kind == "nonce"


class ContractRevert(BridgeError):
    """The contract rejected the mint call."""

    code = "contract_revert"

    def __init__(self, reason: str, fingerprint: Optional[str] = None):
        super().__init__(f"Contract reverted: {reason}", fingerprint)
        self.reason = reason

    def indicates_prior_verification(self, markers: Iterable[str]) -> bool:
        """True if the revert means the identity was already minted on-chain."""
        reason = (self.reason or "").lower()
        return any(marker in reason for marker in markers)


class RetryBudgetExhausted(BridgeError):
    code = "retry_budget_exhausted"

    def __init__(self, attempts: int, last_error: str, fingerprint: Optional[str] = None):
        super().__init__(
            f"Retry budget exhausted after {attempts} attempts: {last_error}",
            fingerprint,
        )
        self.attempts = attempts
        self.last_error = last_error


# ============ Blob Store ============

class StoreUnavailable(BridgeError):
    code = "store_unavailable"


class ContentNotFound(BridgeError):
    code = "content_not_found"

    def __init__(self, cid: str):
        super().__init__(f"Content not found: {cid}")
        self.cid = cid
