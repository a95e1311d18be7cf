"""
PearID Mint Orchestrator
Drives every approved verification to exactly one confirmed identity mint.

State machine per fingerprint:
    PENDING -> SUBMITTED -> CONFIRMED
    PENDING/SUBMITTED -> FAILED_RETRYABLE -> PENDING   (transient, fresh nonce)
    PENDING/SUBMITTED/FAILED_RETRYABLE -> FAILED_TERMINAL

Concurrency:
- Worker tasks share one queue of fingerprints; a fingerprint is queued at
  most once and every step runs under that fingerprint's lock, so work is
  parallel across fingerprints and single-writer within one.
- Every ledger write is a compare-and-set on the request's version.
- Waits between steps (retry backoff, confirmation polling) are scheduled
  re-enqueues. The only sleep inside a step is the short, bounded blob
  store retry while staging metadata.
"""

import asyncio
import hashlib
import json
import logging
import random
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pearid.config import Config, config
from pearid.database import VerificationLedger
from pearid.errors import (
    ContentNotFound,
    ContractRevert,
    DuplicateApproval,
    MintRequestExists,
    NotCancellable,
    NotRetryable,
    RetryBudgetExhausted,
    StaleRecord,
    StoreUnavailable,
    TransientChainError,
    UnknownVerification,
)
from pearid.models import (
    Decision,
    MintCall,
    MintRequest,
    MintState,
    TxStatusKind,
    VerificationRecord,
)
from pearid.fingerprint import idempotency_key
from pearid.services.nonces import NonceAllocator

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by operator"


def build_token_metadata(record: VerificationRecord, request: MintRequest, evidence: bytes) -> Dict[str, Any]:
    """ERC721 metadata for the identity token. The raw fingerprint is never published."""
    return {
        "name": "PearID Verified Identity",
        "description": "Proof that the holder passed PearID identity verification.",
        "attributes": [
            {"trait_type": "idempotency_key", "value": request.idempotency_key},
            {"trait_type": "evidence_cid", "value": record.evidence_cid},
            {"trait_type": "evidence_sha256", "value": hashlib.sha256(evidence).hexdigest()},
            {"trait_type": "verified_at", "display_type": "date", "value": int(record.created_at)},
        ],
    }


class _KeyedLock:
    """One asyncio.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class MintOrchestrator:
    """
    Consumes verification decisions and owns every MintRequest.

    Collaborators:
        ledger: VerificationLedger
        chain: submit(MintCall, nonce), get_status(tx_handle), next_nonce(), address
        blob_store: put(bytes), get(cid), unpin(cid)
    """

    def __init__(
        self,
        ledger: VerificationLedger,
        chain,
        blob_store,
        settings: Config = None,
        nonces: NonceAllocator = None
    ):
        self.ledger = ledger
        self.chain = chain
        self.blob_store = blob_store
        self.settings = settings or config
        self.nonces = nonces or NonceAllocator(ledger, chain)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._locks = _KeyedLock()
        self._workers: List[asyncio.Task] = []
        self._running = False

    # ============ Intake ============

    async def submit_verification(
        self,
        fingerprint: str,
        decision: Decision,
        evidence_cid: str,
        recipient: Optional[str] = None
    ) -> Tuple[VerificationRecord, Optional[MintRequest]]:
        """
        Record a verification decision and stage a mint for approvals.

        Raises:
            DuplicateApproval: the fingerprint already has an APPROVED record
        """
        try:
            record = self.ledger.record_verification(fingerprint, decision, evidence_cid, recipient)
        except DuplicateApproval:
            logger.warning(f"Rejected duplicate approval for {fingerprint}")
            raise

        logger.info(f"Recorded {record.decision.value} verification {record.id} for {fingerprint}")
        if not record.approved:
            return record, None
        return record, await self.on_approved(record)

    async def on_approved(self, record: VerificationRecord) -> MintRequest:
        """
        Stage a PENDING mint for an approved record.

        If a live or CONFIRMED request already exists for the fingerprint it
        is returned unchanged and nothing new is created.
        """
        if not record.approved:
            raise UnknownVerification(
                f"Verification {record.id} is not approved", fingerprint=record.fingerprint
            )

        async with self._locks.hold(record.fingerprint):
            existing = self.ledger.get_mint_state(record.fingerprint)
            if existing is not None and existing.state != MintState.FAILED_TERMINAL:
                logger.info(
                    f"Mint for {record.fingerprint} already {existing.state.value}; nothing to stage"
                )
                return existing

            try:
                request = self.ledger.create_mint_request(record.id, idempotency_key(record.fingerprint))
            except MintRequestExists:
                return self.ledger.get_mint_state(record.fingerprint)

        logger.info(f"Staged mint request {request.id} for {record.fingerprint}")
        self.enqueue(record.fingerprint)
        return request

    # ============ Operator actions ============

    async def cancel(self, fingerprint: str) -> MintRequest:
        """
        Cancel a mint.

        PENDING and FAILED_RETRYABLE requests fail terminally right away. A
        SUBMITTED transaction cannot be recalled; it is flagged so that no
        further retries happen if it fails.
        """
        async with self._locks.hold(fingerprint):
            request = self.ledger.require_request(fingerprint)
            if request.state in (MintState.PENDING, MintState.FAILED_RETRYABLE):
                return self._fail_terminal(request, CANCELLED_MESSAGE, cancel_requested=True)
            if request.state == MintState.SUBMITTED:
                if request.cancel_requested:
                    return request
                logger.info(f"Cancellation requested for submitted mint {fingerprint}; retries disabled")
                return self.ledger.update_request(request, cancel_requested=True)
            raise NotCancellable(
                f"Mint request is {request.state.value}", fingerprint=fingerprint
            )

    async def retry(self, fingerprint: str) -> MintRequest:
        """
        Start a fresh mint cycle after a FAILED_TERMINAL outcome.

        The approved record is reused; evidence is fetched again and the token
        metadata rebuilt, nothing is carried over from the failed request.
        """
        record = self.ledger.get_approved_verification(fingerprint)
        if record is None:
            raise UnknownVerification(
                f"No approved verification for {fingerprint}", fingerprint=fingerprint
            )
        latest = self.ledger.get_mint_state(fingerprint)
        if latest is None or latest.state != MintState.FAILED_TERMINAL:
            state = latest.state.value if latest else "missing"
            raise NotRetryable(f"Mint request is {state}", fingerprint=fingerprint)
        return await self.on_approved(record)

    async def collect_orphans(self) -> List[str]:
        """
        Unpin metadata blobs whose mint failed terminally.

        Only blobs orphaned longer than ORPHAN_GRACE_SECONDS are collected;
        with a grace of 0 orphans are retained indefinitely.
        """
        if not self.settings.orphan_collection_enabled():
            return []

        collected = []
        cutoff = time.time() - self.settings.ORPHAN_GRACE_SECONDS
        for cid in self.ledger.orphaned_blobs(cutoff):
            try:
                removed = await self.blob_store.unpin(cid)
            except StoreUnavailable as e:
                logger.warning(f"Could not unpin orphan {cid}: {e}")
                continue
            if removed:
                self.ledger.mark_blob_collected(cid)
                collected.append(cid)
        if collected:
            logger.info(f"Collected {len(collected)} orphaned metadata blobs")
        return collected

    # ============ Lifecycle ============

    def recover(self) -> int:
        """
        Resume every non-terminal request after a restart.

        Requests without a durably recorded transaction handle go back to
        PENDING; a PENDING request keeps its reserved nonce so the interrupted
        attempt is resumed rather than duplicated, and a request that was
        waiting out a backoff keeps its next_attempt_at. SUBMITTED requests
        resume polling. Approvals that were recorded without a mint request
        get one staged.
        """
        recovered = 0
        live = (MintState.PENDING, MintState.SUBMITTED, MintState.FAILED_RETRYABLE)
        for request in self.ledger.list_requests(live, limit=1_000_000):
            if request.state == MintState.FAILED_RETRYABLE and request.tx_handle is None:
                if request.attempt_count >= self.settings.MINT_MAX_ATTEMPTS:
                    self._fail_terminal(request, request.last_error or "Retry budget exhausted")
                    continue
                request = self.ledger.transition(
                    request,
                    MintState.PENDING,
                    nonce=None,
                    submitted_at=None,
                )
            self.enqueue(request.fingerprint, self._remaining_backoff(request))
            recovered += 1

        for record in self.ledger.unstaged_approvals():
            try:
                request = self.ledger.create_mint_request(record.id, idempotency_key(record.fingerprint))
            except MintRequestExists:
                continue
            logger.info(f"Staged missing mint request {request.id} for {record.fingerprint}")
            self.enqueue(record.fingerprint)
            recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} in-flight mint requests")
        return recovered

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.recover()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"mint-worker-{i}")
            for i in range(max(1, self.settings.WORKER_COUNT))
        ]
        logger.info(f"Mint orchestrator started with {len(self._workers)} workers")

    async def stop(self) -> None:
        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Mint orchestrator stopped")

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queued": len(self._queued),
            "scheduled": len(self._timers),
            "requests": self.ledger.state_counts(),
        }

    # ============ Scheduling ============

    def enqueue(self, fingerprint: str, delay: float = 0.0) -> None:
        """Queue a fingerprint for its next step, now or after `delay` seconds."""
        if delay and delay > 0:
            loop = asyncio.get_running_loop()
            previous = self._timers.pop(fingerprint, None)
            if previous is not None:
                previous.cancel()
            self._timers[fingerprint] = loop.call_later(delay, self._fire_timer, fingerprint)
            return

        if fingerprint in self._queued:
            return
        self._queued.add(fingerprint)
        self._queue.put_nowait(fingerprint)

    def _fire_timer(self, fingerprint: str) -> None:
        self._timers.pop(fingerprint, None)
        if self._running:
            self.enqueue(fingerprint)

    async def _worker(self, index: int) -> None:
        while True:
            fingerprint = await self._queue.get()
            self._queued.discard(fingerprint)
            delay: Optional[float] = None
            try:
                delay = await self.step(fingerprint)
            except StaleRecord as e:
                logger.info(f"Worker {index}: {e}; re-reading {fingerprint}")
                delay = 0.0
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Worker {index}: unexpected error processing {fingerprint}")
                delay = self.settings.POLL_INTERVAL_SECONDS
            finally:
                self._queue.task_done()

            if delay is not None and self._running:
                self.enqueue(fingerprint, delay)

    # ============ State machine ============

    async def step(self, fingerprint: str) -> Optional[float]:
        """
        Advance the fingerprint's latest request by one step.

        Returns:
            Seconds until the next step, or None once the request is terminal
        """
        async with self._locks.hold(fingerprint):
            request = self.ledger.get_mint_state(fingerprint)
            if request is None or request.is_terminal:
                return None

            if request.state == MintState.PENDING:
                return await self._step_pending(request)
            if request.state == MintState.SUBMITTED:
                return await self._step_submitted(request)
            return await self._step_retryable(request)

    async def _step_pending(self, request: MintRequest) -> Optional[float]:
        if request.cancel_requested:
            self._fail_terminal(request, CANCELLED_MESSAGE)
            return None

        wait = self._remaining_backoff(request)
        if wait > 0:
            return wait

        if request.metadata_cid is None:
            try:
                request = await self._stage_metadata(request)
            except (ContentNotFound, StoreUnavailable) as e:
                # No silent retry with stale evidence: a fresh cycle is required
                self._fail_terminal(request, f"Metadata staging failed: {e.message}")
                return None

        if request.nonce is None:
            attempt = request.attempt_count + 1
            try:
                nonce = await self._chain_call(self.nonces.allocate())
            except TransientChainError as e:
                return await self._handle_transient(request, e, attempt)
            # Durable submission intent: a crash after this point resumes with this nonce
            request = self.ledger.update_request(
                request, nonce=nonce, attempt_count=attempt, next_attempt_at=None
            )

        call = self._mint_call(request)
        try:
            tx_handle = await self._chain_call(self.chain.submit(call, request.nonce))
        except TransientChainError as e:
            return await self._handle_transient(request, e, request.attempt_count)
        except ContractRevert as e:
            return await self._handle_revert(request, e)

        self.ledger.record_attempt(
            request.id, request.attempt_count, "submitted",
            nonce=request.nonce, tx_handle=tx_handle
        )
        self.ledger.transition(
            request,
            MintState.SUBMITTED,
            tx_handle=tx_handle,
            submitted_at=time.time(),
            last_error=None,
        )
        logger.info(
            f"Mint {request.fingerprint} submitted: attempt={request.attempt_count} "
            f"nonce={request.nonce} tx={tx_handle}"
        )
        return self.settings.POLL_INTERVAL_SECONDS

    async def _step_submitted(self, request: MintRequest) -> Optional[float]:
        try:
            status = await self._chain_call(self.chain.get_status(request.tx_handle))
        except TransientChainError as e:
            logger.warning(f"Status poll for {request.tx_handle} failed: {e}")
            return self.settings.POLL_INTERVAL_SECONDS
        except ContractRevert as e:
            return await self._handle_revert(request, e)

        if status.kind == TxStatusKind.CONFIRMED:
            if status.depth < self.settings.CONFIRMATION_DEPTH:
                return self.settings.POLL_INTERVAL_SECONDS
            self.ledger.record_attempt(
                request.id, request.attempt_count, "confirmed",
                nonce=request.nonce, tx_handle=request.tx_handle
            )
            self.ledger.transition(request, MintState.CONFIRMED, last_error=None)
            logger.info(
                f"Mint {request.fingerprint} confirmed at depth {status.depth}: tx={request.tx_handle}"
            )
            return None

        if status.kind == TxStatusKind.REVERTED:
            return await self._handle_revert(request, ContractRevert(status.reason or "execution reverted"))

        # Pending or unknown: wait, unless the transaction looks stuck or dropped
        elapsed = time.time() - (request.submitted_at or request.updated_at)
        if elapsed >= self.settings.CONFIRMATION_TIMEOUT_SECONDS:
            error = TransientChainError(
                f"Transaction {request.tx_handle} still {status.kind.value} after {elapsed:.0f}s",
                kind="stuck",
            )
            return await self._handle_transient(request, error, request.attempt_count)
        return self.settings.POLL_INTERVAL_SECONDS

    async def _step_retryable(self, request: MintRequest) -> Optional[float]:
        if request.cancel_requested:
            self._fail_terminal(request, CANCELLED_MESSAGE)
            return None
        if request.attempt_count >= self.settings.MINT_MAX_ATTEMPTS:
            exhausted = RetryBudgetExhausted(request.attempt_count, request.last_error or "", request.fingerprint)
            self._fail_terminal(request, exhausted.message)
            return None

        now = time.time()
        if request.next_attempt_at is not None and now < request.next_attempt_at:
            return request.next_attempt_at - now

        self.ledger.transition(
            request,
            MintState.PENDING,
            nonce=None,
            tx_handle=None,
            next_attempt_at=None,
            submitted_at=None,
        )
        return 0.0

    # ============ Outcomes ============

    async def _handle_transient(
        self,
        request: MintRequest,
        error: TransientChainError,
        attempt: int
    ) -> Optional[float]:
        self.ledger.record_attempt(
            request.id, attempt, f"transient:{error.kind}",
            nonce=request.nonce, tx_handle=request.tx_handle, error=error.message
        )

        if error.is_nonce_conflict or error.kind == "stuck":
            try:
                await self._chain_call(self.nonces.resync(exclude_request_id=request.id))
            except TransientChainError as e:
                logger.warning(f"Nonce resync failed: {e}")
        elif request.nonce is not None and request.tx_handle is None:
            # Broadcast failed; the nonce was not consumed
            await self.nonces.release(request.nonce)

        if request.cancel_requested:
            self._fail_terminal(request, f"{CANCELLED_MESSAGE} after: {error.message}", attempt_count=attempt)
            return None

        if attempt >= self.settings.MINT_MAX_ATTEMPTS:
            exhausted = RetryBudgetExhausted(attempt, error.message, request.fingerprint)
            self._fail_terminal(request, exhausted.message, attempt_count=attempt)
            return None

        delay = self._backoff(attempt)
        self.ledger.transition(
            request,
            MintState.FAILED_RETRYABLE,
            attempt_count=attempt,
            last_error=error.message,
            nonce=None,
            tx_handle=None,
            next_attempt_at=time.time() + delay,
        )
        logger.warning(
            f"Mint {request.fingerprint} attempt {attempt} failed ({error.kind}): "
            f"{error.message}; retrying in {delay:.1f}s"
        )
        return delay

    async def _handle_revert(self, request: MintRequest, revert: ContractRevert) -> None:
        if request.nonce is not None and request.tx_handle is None:
            # Rejected before broadcast; the nonce was not consumed
            await self.nonces.release(request.nonce)

        if revert.indicates_prior_verification(self.settings.ALREADY_VERIFIED_MARKERS):
            self.ledger.record_attempt(
                request.id, request.attempt_count, "already_verified",
                nonce=request.nonce, tx_handle=request.tx_handle, error=revert.reason
            )
            self.ledger.transition(request, MintState.CONFIRMED, last_error=None)
            logger.info(f"Mint {request.fingerprint} already on-chain ({revert.reason}); marked CONFIRMED")
            return None

        self.ledger.record_attempt(
            request.id, request.attempt_count, "reverted",
            nonce=request.nonce, tx_handle=request.tx_handle, error=revert.reason
        )
        self._fail_terminal(request, revert.message)
        return None

    def _fail_terminal(self, request: MintRequest, message: str, **changes) -> MintRequest:
        failed = self.ledger.transition(request, MintState.FAILED_TERMINAL, last_error=message, **changes)
        logger.error(
            f"Mint {request.fingerprint} (request {request.id}) failed terminally after "
            f"{failed.attempt_count} attempts: {message}"
        )
        return failed

    # ============ Helpers ============

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter in [0.5x, 1.5x], capped."""
        base = self.settings.BACKOFF_BASE_SECONDS * (2 ** max(0, attempt - 1))
        return min(self.settings.BACKOFF_CAP_SECONDS, base * (0.5 + random.random()))

    @staticmethod
    def _remaining_backoff(request: MintRequest) -> float:
        if request.next_attempt_at is None:
            return 0.0
        return max(0.0, request.next_attempt_at - time.time())

    def _mint_call(self, request: MintRequest) -> MintCall:
        record = self.ledger.get_verification(request.verification_id)
        return MintCall(
            fingerprint=request.fingerprint,
            idempotency_key=request.idempotency_key,
            token_uri=f"ipfs://{request.metadata_cid}",
            recipient=record.recipient if record else None,
        )

    async def _chain_call(self, awaitable: Awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.settings.CHAIN_CALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise TransientChainError("Chain call timed out", kind="timeout") from e

    async def _store_call(self, factory: Callable[[], Awaitable]):
        """Run a blob store call with a timeout and bounded retry on StoreUnavailable."""
        last_error: Optional[StoreUnavailable] = None
        for attempt in range(1, max(1, self.settings.STORE_MAX_ATTEMPTS) + 1):
            try:
                return await asyncio.wait_for(factory(), self.settings.STORE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                last_error = StoreUnavailable("Blob store call timed out")
            except StoreUnavailable as e:
                last_error = e
            if attempt < self.settings.STORE_MAX_ATTEMPTS:
                logger.warning(f"Blob store unavailable (attempt {attempt}): {last_error}")
                await asyncio.sleep(self._backoff(attempt))
        raise last_error

    async def _stage_metadata(self, request: MintRequest) -> MintRequest:
        record = self.ledger.get_verification(request.verification_id)
        evidence = await self._store_call(lambda: self.blob_store.get(record.evidence_cid))

        metadata = build_token_metadata(record, request, evidence)
        payload = json.dumps(metadata, sort_keys=True, separators=(",", ":")).encode("utf-8")
        cid = await self._store_call(
            lambda: self.blob_store.put(payload, name=f"pearid-{request.idempotency_key[2:18]}")
        )

        self.ledger.track_blob(cid, request.id)
        logger.info(f"Staged metadata {cid} for mint {request.fingerprint}")
        return self.ledger.update_request(request, metadata_cid=cid)
