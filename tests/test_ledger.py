import sqlite3
import threading

import pytest

from pearid.database import get_db_connection
from pearid.errors import (
    DuplicateApproval,
    InvalidFingerprint,
    InvalidTransition,
    MintRequestExists,
    MintRequestNotFound,
    StaleRecord,
    UnknownVerification,
)
from pearid.fingerprint import idempotency_key
from pearid.models import Decision, MintState


def approve(ledger, fingerprint="abc123", evidence_cid="Qm111"):
    return ledger.record_verification(fingerprint, Decision.APPROVED, evidence_cid)


def test_record_verification_returns_immutable_record(ledger):
    record = approve(ledger)

    assert record.id > 0
    assert record.fingerprint == "abc123"
    assert record.approved
    assert ledger.get_verification(record.id) == record
    with pytest.raises(AttributeError):
        record.decision = Decision.REJECTED


def test_second_approval_is_rejected(ledger):
    approve(ledger)

    with pytest.raises(DuplicateApproval):
        approve(ledger, evidence_cid="Qm222")

    assert len(ledger.get_verifications("abc123")) == 1


def test_rejections_may_repeat_and_precede_approval(ledger):
    ledger.record_verification("abc123", Decision.REJECTED, "Qm100")
    ledger.record_verification("abc123", Decision.REJECTED, "Qm101")
    record = approve(ledger)

    history = ledger.get_verifications("abc123")
    assert [r.decision for r in history] == [Decision.REJECTED, Decision.REJECTED, Decision.APPROVED]
    assert ledger.get_approved_verification("abc123") == record


def test_invalid_fingerprint_rejected(ledger):
    with pytest.raises(InvalidFingerprint):
        ledger.record_verification("not a fingerprint!", Decision.APPROVED, "Qm111")


def test_concurrent_approvals_from_threads_yield_one_record(ledger):
    errors = []
    records = []
    barrier = threading.Barrier(8)

    def worker(i):
        barrier.wait()
        try:
            records.append(approve(ledger, evidence_cid=f"Qm{i}"))
        except DuplicateApproval as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(records) == 1
    assert len(errors) == 7


def test_approved_uniqueness_enforced_by_schema(ledger):
    approve(ledger)
    with get_db_connection(ledger.db_path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO verifications (fingerprint, decision, evidence_cid, created_at) "
                "VALUES ('abc123', 'APPROVED', 'Qm9', 0)"
            )


def test_create_mint_request_requires_approved_record(ledger):
    rejected = ledger.record_verification("abc123", Decision.REJECTED, "Qm111")

    with pytest.raises(UnknownVerification):
        ledger.create_mint_request(rejected.id, idempotency_key("abc123"))
    with pytest.raises(UnknownVerification):
        ledger.create_mint_request(9999, idempotency_key("abc123"))


def test_create_mint_request_is_single_per_fingerprint(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))

    assert request.state == MintState.PENDING
    assert request.attempt_count == 0
    assert request.version == 0
    with pytest.raises(MintRequestExists):
        ledger.create_mint_request(record.id, idempotency_key("abc123"))


def test_transition_is_compare_and_set(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))

    updated = ledger.transition(request, MintState.SUBMITTED, tx_handle="0xaa", nonce=0)
    assert updated.version == request.version + 1
    assert updated.tx_handle == "0xaa"

    # A writer holding the old version loses
    with pytest.raises(StaleRecord):
        ledger.transition(request, MintState.FAILED_RETRYABLE, last_error="late")
    assert ledger.get_mint_state("abc123").state == MintState.SUBMITTED


def test_transition_outside_state_machine_is_rejected(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))
    confirmed = ledger.transition(request, MintState.CONFIRMED)

    with pytest.raises(InvalidTransition):
        ledger.transition(confirmed, MintState.PENDING)
    with pytest.raises(InvalidTransition):
        ledger.transition(confirmed, MintState.FAILED_TERMINAL)


def test_update_rejects_unknown_columns(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))

    with pytest.raises(ValueError):
        ledger.update_request(request, fingerprint="other")


def test_new_request_allowed_after_terminal_failure(ledger):
    record = approve(ledger)
    first = ledger.create_mint_request(record.id, idempotency_key("abc123"))
    ledger.transition(first, MintState.FAILED_TERMINAL, last_error="reverted")

    second = ledger.create_mint_request(record.id, idempotency_key("abc123"))

    assert second.id != first.id
    assert ledger.get_mint_state("abc123").id == second.id
    assert [r.state for r in ledger.get_mint_requests("abc123")] == [
        MintState.FAILED_TERMINAL, MintState.PENDING
    ]


def test_confirmed_uniqueness_enforced_by_schema(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))
    ledger.transition(request, MintState.CONFIRMED)

    with get_db_connection(ledger.db_path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO mint_requests (fingerprint, verification_id, idempotency_key, state, "
                "created_at, updated_at) VALUES ('abc123', ?, 'k', 'CONFIRMED', 0, 0)",
                (record.id,)
            )


def test_require_request_raises_when_missing(ledger):
    with pytest.raises(MintRequestNotFound):
        ledger.require_request("nobody")


def test_list_requests_and_state_counts(ledger):
    for fp in ("fp-a", "fp-b", "fp-c"):
        record = approve(ledger, fingerprint=fp)
        ledger.create_mint_request(record.id, idempotency_key(fp))
    ledger.transition(ledger.get_mint_state("fp-b"), MintState.CONFIRMED)

    pending = ledger.list_requests([MintState.PENDING])
    assert [r.fingerprint for r in pending] == ["fp-a", "fp-c"]
    assert ledger.list_requests([]) == []
    counts = ledger.state_counts()
    assert counts["PENDING"] == 2
    assert counts["CONFIRMED"] == 1
    assert counts["FAILED_TERMINAL"] == 0


def test_reserve_nonce_is_monotonic_and_floored(ledger):
    account = "0xabc"
    assert ledger.reserve_nonce(account, 0) == 0
    assert ledger.reserve_nonce(account, 0) == 1
    # Chain moved ahead (transactions sent elsewhere)
    assert ledger.reserve_nonce(account, 7) == 7
    assert ledger.reserve_nonce(account, 0) == 8

    ledger.reset_nonce(account, 3)
    assert ledger.reserve_nonce(account, 0) == 3


def test_attempt_history_is_ordered(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))
    ledger.record_attempt(request.id, 1, "transient:timeout", nonce=0, error="timed out")
    ledger.record_attempt(request.id, 2, "submitted", nonce=1, tx_handle="0xbb")

    attempts = ledger.get_attempts(request.id)
    assert [(a.attempt, a.outcome) for a in attempts] == [(1, "transient:timeout"), (2, "submitted")]


def test_blobs_orphaned_on_terminal_failure(ledger):
    record = approve(ledger)
    request = ledger.create_mint_request(record.id, idempotency_key("abc123"))
    ledger.track_blob("bafymeta", request.id)
    assert ledger.orphaned_blobs(older_than=float("inf")) == []

    ledger.transition(request, MintState.FAILED_TERMINAL, last_error="boom")
    assert ledger.orphaned_blobs(older_than=float("inf")) == ["bafymeta"]

    ledger.mark_blob_collected("bafymeta")
    assert ledger.orphaned_blobs(older_than=float("inf")) == []


def test_release_nonce_only_rolls_back_latest_reservation(ledger):
    account = "0xabc"
    first = ledger.reserve_nonce(account, 0)
    second = ledger.reserve_nonce(account, 0)

    assert ledger.release_nonce(account, first) is False
    assert ledger.release_nonce(account, second) is True
    assert ledger.reserve_nonce(account, 0) == second


def test_unstaged_approvals_lists_approvals_without_requests(ledger):
    staged = approve(ledger, "fp-a")
    ledger.create_mint_request(staged.id, idempotency_key("fp-a"))
    unstaged = approve(ledger, "fp-b")
    ledger.record_verification("fp-c", Decision.REJECTED, "Qm333")

    assert ledger.unstaged_approvals() == [unstaged]


def test_highest_unbroadcast_nonce_ignores_broadcast_requests(ledger):
    requests = {}
    for fp in ("fp-a", "fp-b", "fp-c"):
        record = approve(ledger, fp)
        requests[fp] = ledger.create_mint_request(record.id, idempotency_key(fp))

    assert ledger.highest_unbroadcast_nonce() is None

    ledger.update_request(requests["fp-a"], nonce=4)
    held = ledger.update_request(requests["fp-b"], nonce=5)
    sent = ledger.update_request(requests["fp-c"], nonce=9)
    ledger.transition(sent, MintState.SUBMITTED, tx_handle="0xcc")

    assert ledger.highest_unbroadcast_nonce() == 5
    assert ledger.highest_unbroadcast_nonce(exclude_request_id=held.id) == 4
