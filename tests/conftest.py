import asyncio
import hashlib

import pytest

from pearid.config import Config
from pearid.database import VerificationLedger
from pearid.errors import ContentNotFound, ContractRevert, TransientChainError
from pearid.models import TxStatus
from pearid.services.orchestrator import MintOrchestrator


class FakeChainClient:
    """
    In-memory stand-in for BlockchainService.

    Behaves like the minter contract: a used nonce is rejected as too low and
    a second mint for the same idempotency key reverts with "already verified".
    """

    def __init__(self, address="0x00000000000000000000000000000000000b41d6"):
        self.address = address
        self.pending_nonce = 0
        self.used_nonces = set()
        self.minted = set()
        self.submissions = []
        self.submit_errors = []
        self.handles = []
        self.statuses = {}
        self.default_status = TxStatus.confirmed(3)
        self.submit_delay = 0.0
        self.connected = True

    async def is_connected(self):
        return self.connected

    async def next_nonce(self):
        return self.pending_nonce

    async def submit(self, call, nonce):
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        if nonce in self.used_nonces:
            raise TransientChainError(f"nonce too low: {nonce}", kind="nonce")
        if call.idempotency_key in self.minted:
            raise ContractRevert("PearID: already verified")

        self.used_nonces.add(nonce)
        self.pending_nonce = max(self.pending_nonce, nonce + 1)
        self.minted.add(call.idempotency_key)
        handle = self.handles.pop(0) if self.handles else "0x%064x" % (len(self.submissions) + 1)
        self.submissions.append((call, nonce, handle))
        return handle

    async def get_status(self, tx_handle):
        scripted = self.statuses.get(tx_handle)
        if scripted:
            status = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if isinstance(status, Exception):
                raise status
            return status
        return self.default_status


class FakeBlobStore:
    """In-memory content-addressed store with scriptable failures."""

    def __init__(self):
        self.blobs = {}
        self.get_errors = []
        self.put_errors = []
        self.unpinned = []
        self.closed = False

    async def put(self, data, name=None):
        if self.put_errors:
            raise self.put_errors.pop(0)
        cid = "bafy" + hashlib.sha256(data).hexdigest()[:32]
        self.blobs[cid] = data
        return cid

    async def get(self, cid):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if cid not in self.blobs:
            raise ContentNotFound(cid)
        return self.blobs[cid]

    async def unpin(self, cid):
        self.unpinned.append(cid)
        self.blobs.pop(cid, None)
        return True

    async def close(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return Config(
        DB_PATH=str(tmp_path / "ledger.db"),
        WORKER_COUNT=2,
        MINT_MAX_ATTEMPTS=3,
        BACKOFF_BASE_SECONDS=0.0,
        BACKOFF_CAP_SECONDS=0.0,
        POLL_INTERVAL_SECONDS=0.01,
        CONFIRMATION_DEPTH=3,
        CONFIRMATION_TIMEOUT_SECONDS=60.0,
        CHAIN_CALL_TIMEOUT_SECONDS=5.0,
        STORE_TIMEOUT_SECONDS=5.0,
        STORE_MAX_ATTEMPTS=2,
        FINGERPRINT_SECRET="test-secret",
        ORPHAN_GRACE_SECONDS=0.0,
    )


@pytest.fixture
def ledger(settings):
    return VerificationLedger(settings.DB_PATH)


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def blob_store():
    store = FakeBlobStore()
    store.blobs["Qm111"] = b"evidence-bundle-abc123"
    return store


@pytest.fixture
def orchestrator(ledger, chain, blob_store, settings):
    return MintOrchestrator(ledger, chain, blob_store, settings=settings)


async def drive(orchestrator, fingerprint, max_steps=50):
    """Step a fingerprint until its latest request is terminal; return the final request."""
    for _ in range(max_steps):
        if await orchestrator.step(fingerprint) is None:
            return orchestrator.ledger.get_mint_state(fingerprint)
    raise AssertionError(f"{fingerprint} did not settle in {max_steps} steps")
