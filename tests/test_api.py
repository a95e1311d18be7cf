import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from web3 import Web3

from conftest import drive
from pearid.fingerprint import derive_fingerprint
from pearid.errors import ContractRevert
from pearid.main import create_app


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator=orchestrator, run_workers=False))


def approve(client, fingerprint="abc123", **extra):
    body = {"fingerprint": fingerprint, "decision": "APPROVED", "evidence_cid": "Qm111", **extra}
    return client.post("/api/verifications", json=body)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["chain_connected"] is True
    assert data["orchestrator"]["requests"]["PENDING"] == 0


def test_health_reports_unreachable_chain(client, chain):
    chain.connected = False

    assert client.get("/api/health").json()["chain_connected"] is False


def test_approval_stages_pending_mint(client):
    response = approve(client)

    assert response.status_code == 201
    data = response.json()
    assert data["fingerprint"] == "abc123"
    assert data["decision"] == "APPROVED"
    assert data["mint_state"] == "PENDING"
    assert data["mint_request_id"] is not None


def test_rejection_stages_nothing(client):
    response = client.post("/api/verifications", json={
        "fingerprint": "abc123", "decision": "REJECTED", "evidence_cid": "Qm111"
    })

    assert response.status_code == 201
    assert response.json()["mint_state"] is None


def test_duplicate_approval_conflicts(client):
    approve(client)
    response = approve(client)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "duplicate_approval"


def test_fingerprint_derived_from_attributes(client):
    attributes = {"document_number": "X1234567", "name": "Ada Lovelace"}

    response = client.post("/api/verifications", json={
        "identity_attributes": attributes, "decision": "APPROVED", "evidence_cid": "Qm111"
    })
    derived = client.post("/api/fingerprints", json={"identity_attributes": attributes})

    expected = derive_fingerprint(attributes, secret="test-secret")
    assert response.status_code == 201
    assert response.json()["fingerprint"] == expected
    assert derived.json() == {"fingerprint": expected}


@pytest.mark.parametrize("body", [
    {"decision": "APPROVED", "evidence_cid": "Qm111"},
    {"fingerprint": "abc123", "identity_attributes": {"name": "Ada"}, "decision": "APPROVED", "evidence_cid": "Qm111"},
    {"fingerprint": "abc 123", "decision": "APPROVED", "evidence_cid": "Qm111"},
    {"fingerprint": "abc123", "decision": "MAYBE", "evidence_cid": "Qm111"},
    {"fingerprint": "abc123", "decision": "APPROVED", "evidence_cid": ""},
    {"fingerprint": "abc123", "decision": "APPROVED", "evidence_cid": "Qm111", "recipient": "not-an-address"},
])
def test_invalid_submissions_are_unprocessable(client, body):
    assert client.post("/api/verifications", json=body).status_code == 422


def test_recipient_is_checksummed(client, ledger):
    approve(client, recipient="0x" + "ab" * 20)

    record = ledger.get_approved_verification("abc123")
    assert record.recipient == Web3.to_checksum_address("0x" + "ab" * 20)


def test_mint_status_and_listing(client, orchestrator):
    approve(client)
    asyncio.run(drive(orchestrator, "abc123"))

    response = client.get("/api/mints/abc123")
    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "CONFIRMED"
    assert data["tx_url"].endswith(data["tx_handle"])
    assert [a["outcome"] for a in data["attempts"]] == ["submitted", "confirmed"]

    confirmed = client.get("/api/mints", params={"state": "CONFIRMED"}).json()
    assert [m["fingerprint"] for m in confirmed] == ["abc123"]
    assert client.get("/api/mints", params={"state": "PENDING"}).json() == []


def test_unknown_mint_is_not_found(client):
    response = client.get("/api/mints/nobody")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "mint_request_not_found"


def test_cancel_then_retry(client, orchestrator):
    approve(client)

    cancelled = client.post("/api/mints/abc123/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "FAILED_TERMINAL"
    assert cancelled.json()["cancel_requested"] is True

    again = client.post("/api/mints/abc123/cancel")
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "not_cancellable"

    retried = client.post("/api/mints/abc123/retry")
    assert retried.status_code == 201
    assert retried.json()["state"] == "PENDING"
    assert retried.json()["id"] != cancelled.json()["id"]

    assert client.post("/api/mints/abc123/retry").status_code == 409


def test_history_timeline(client, orchestrator, chain):
    chain.submit_errors = [ContractRevert("PearID: paused")]
    client.post("/api/verifications", json={
        "fingerprint": "abc123", "decision": "REJECTED", "evidence_cid": "Qm100"
    })
    approve(client)
    asyncio.run(drive(orchestrator, "abc123"))

    response = client.get("/api/verifications/abc123")

    assert response.status_code == 200
    data = response.json()
    assert data["approved"] is True
    assert data["mint_state"] == "FAILED_TERMINAL"
    events = [e["event_type"] for e in data["timeline"]]
    assert events == ["verification", "verification", "mint_requested", "mint_reverted"]
    assert client.get("/api/verifications/nobody").status_code == 404


def test_orphan_collection_disabled_by_default(client):
    response = client.post("/api/admin/orphans/collect")

    assert response.status_code == 200
    assert response.json() == {"enabled": False, "collected": []}


def test_workers_run_with_app_lifespan(orchestrator):
    app = create_app(orchestrator=orchestrator, run_workers=True)

    with TestClient(app) as client:
        assert approve(client).status_code == 201
        state = None
        for _ in range(300):
            state = client.get("/api/mints/abc123").json()["state"]
            if state == "CONFIRMED":
                break
            time.sleep(0.01)

    assert state == "CONFIRMED"
    assert not orchestrator.running
