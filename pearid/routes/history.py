"""
PearID History API
Provides the verification and mint timeline for a fingerprint.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from pearid.routes.common import get_orchestrator
from pearid.services.orchestrator import MintOrchestrator


router = APIRouter()


class TimelineEvent(BaseModel):
    """Single event in a fingerprint's history."""
    event_type: str
    timestamp: float
    decision: Optional[str] = None
    evidence_cid: Optional[str] = None
    mint_request_id: Optional[int] = None
    state: Optional[str] = None
    attempt: Optional[int] = None
    nonce: Optional[int] = None
    tx_hash: Optional[str] = None
    tx_url: Optional[str] = None
    error: Optional[str] = None


class FingerprintHistoryResponse(BaseModel):
    """Fingerprint history response model."""
    fingerprint: str
    approved: bool
    mint_state: Optional[str] = None
    timeline: List[TimelineEvent]


@router.get("/verifications/{fingerprint}", response_model=FingerprintHistoryResponse)
async def get_fingerprint_history(
    fingerprint: str,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """
    Get the complete history for a fingerprint.

    Returns verification decisions, mint requests and every submission
    attempt, oldest first.
    """
    ledger = orchestrator.ledger

    records = ledger.get_verifications(fingerprint)
    if not records:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No verifications for fingerprint: {fingerprint}"
        )

    timeline = [
        TimelineEvent(
            event_type="verification",
            timestamp=record.created_at,
            decision=record.decision.value,
            evidence_cid=record.evidence_cid
        )
        for record in records
    ]

    requests = ledger.get_mint_requests(fingerprint)
    for request in requests:
        timeline.append(TimelineEvent(
            event_type="mint_requested",
            timestamp=request.created_at,
            mint_request_id=request.id,
            state=request.state.value,
            error=request.last_error
        ))
        for attempt in ledger.get_attempts(request.id):
            timeline.append(TimelineEvent(
                event_type=f"mint_{attempt.outcome}",
                timestamp=attempt.created_at,
                mint_request_id=request.id,
                attempt=attempt.attempt,
                nonce=attempt.nonce,
                tx_hash=attempt.tx_handle,
                tx_url=orchestrator.settings.get_tx_url(attempt.tx_handle) if attempt.tx_handle else None,
                error=attempt.error
            ))

    # Sort timeline by timestamp (oldest first)
    timeline.sort(key=lambda event: event.timestamp)

    return FingerprintHistoryResponse(
        fingerprint=fingerprint,
        approved=any(record.approved for record in records),
        mint_state=requests[-1].state.value if requests else None,
        timeline=timeline
    )
