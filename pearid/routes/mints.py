"""
PearID Mint API
Mint status lookups and operator actions (cancel, retry, orphan collection).
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pearid.models import MintRequest, MintState
from pearid.routes.common import get_orchestrator
from pearid.services.orchestrator import MintOrchestrator


router = APIRouter()


class AttemptResponse(BaseModel):
    attempt: int
    outcome: str
    nonce: Optional[int] = None
    tx_handle: Optional[str] = None
    error: Optional[str] = None
    created_at: float


class MintStatusResponse(BaseModel):
    """Mint request state as seen by operators."""
    id: int
    fingerprint: str
    verification_id: int
    idempotency_key: str
    state: MintState
    attempt_count: int
    version: int
    metadata_cid: Optional[str] = None
    metadata_url: Optional[str] = None
    last_error: Optional[str] = None
    tx_handle: Optional[str] = None
    tx_url: Optional[str] = None
    nonce: Optional[int] = None
    cancel_requested: bool
    next_attempt_at: Optional[float] = None
    submitted_at: Optional[float] = None
    created_at: float
    updated_at: float
    attempts: List[AttemptResponse] = []


class OrphanCollectionResponse(BaseModel):
    enabled: bool
    collected: List[str]


def to_response(orchestrator: MintOrchestrator, request: MintRequest, with_attempts: bool = True) -> MintStatusResponse:
    data = request.to_dict()
    data["metadata_url"] = orchestrator.settings.get_ipfs_url(request.metadata_cid) if request.metadata_cid else None
    data["tx_url"] = orchestrator.settings.get_tx_url(request.tx_handle) if request.tx_handle else None
    if with_attempts:
        data["attempts"] = [a.to_dict() for a in orchestrator.ledger.get_attempts(request.id)]
    return MintStatusResponse(**data)


@router.get("/mints", response_model=List[MintStatusResponse])
async def list_mints(
    state: Optional[List[MintState]] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """List mint requests, optionally filtered by one or more states."""
    requests = orchestrator.ledger.list_requests(state, limit=limit)
    return [to_response(orchestrator, request, with_attempts=False) for request in requests]


@router.get("/mints/{fingerprint}", response_model=MintStatusResponse)
async def get_mint(
    fingerprint: str,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """Latest mint request for a fingerprint with its attempt history."""
    return to_response(orchestrator, orchestrator.ledger.require_request(fingerprint))


@router.post("/mints/{fingerprint}/cancel", response_model=MintStatusResponse)
async def cancel_mint(
    fingerprint: str,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """
    Cancel a mint.

    PENDING and FAILED_RETRYABLE mints fail terminally at once; a SUBMITTED
    mint is flagged so it is never retried.
    """
    return to_response(orchestrator, await orchestrator.cancel(fingerprint))


@router.post("/mints/{fingerprint}/retry", response_model=MintStatusResponse, status_code=201)
async def retry_mint(
    fingerprint: str,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """Start a fresh mint cycle for a fingerprint whose last mint failed terminally."""
    return to_response(orchestrator, await orchestrator.retry(fingerprint))


@router.post("/admin/orphans/collect", response_model=OrphanCollectionResponse)
async def collect_orphans(orchestrator: MintOrchestrator = Depends(get_orchestrator)):
    """Unpin metadata blobs left behind by terminally failed mints."""
    collected = await orchestrator.collect_orphans()
    return OrphanCollectionResponse(
        enabled=orchestrator.settings.orphan_collection_enabled(),
        collected=collected
    )
