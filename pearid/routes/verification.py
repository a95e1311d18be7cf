"""
PearID Verification API
Records verification decisions and stages mints for approvals.
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from web3 import Web3

from pearid.fingerprint import derive_fingerprint, validate_fingerprint
from pearid.models import Decision
from pearid.routes.common import get_orchestrator
from pearid.services.orchestrator import MintOrchestrator


router = APIRouter()


class VerificationRequest(BaseModel):
    """A decision from the verification flow. Exactly one of fingerprint or identity_attributes."""
    fingerprint: Optional[str] = None
    identity_attributes: Optional[Dict[str, str]] = None
    decision: Decision
    evidence_cid: str = Field(..., min_length=1)
    recipient: Optional[str] = None


class VerificationResponse(BaseModel):
    """Verification response model."""
    verification_id: int
    fingerprint: str
    decision: str
    mint_request_id: Optional[int] = None
    mint_state: Optional[str] = None
    message: str


class FingerprintRequest(BaseModel):
    identity_attributes: Dict[str, str]


class FingerprintResponse(BaseModel):
    fingerprint: str


def resolve_fingerprint(
    fingerprint: Optional[str],
    attributes: Optional[Dict[str, str]],
    secret: str
) -> str:
    """Use the given fingerprint or derive one from identity attributes."""
    if bool(fingerprint) == bool(attributes):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide exactly one of fingerprint or identity_attributes"
        )
    if fingerprint:
        return validate_fingerprint(fingerprint)

    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Fingerprint derivation is not configured"
        )
    return derive_fingerprint(attributes, secret=secret)


@router.post("/verifications", response_model=VerificationResponse, status_code=status.HTTP_201_CREATED)
async def record_verification(
    body: VerificationRequest,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """
    Record a verification decision.

    An APPROVED decision stages a PENDING mint; a second approval for the
    same fingerprint is rejected with 409.
    """
    fingerprint = resolve_fingerprint(
        body.fingerprint, body.identity_attributes, orchestrator.settings.FINGERPRINT_SECRET
    )

    if body.recipient and not Web3.is_address(body.recipient):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid recipient address: {body.recipient}"
        )

    record, request = await orchestrator.submit_verification(
        fingerprint,
        body.decision,
        body.evidence_cid,
        recipient=Web3.to_checksum_address(body.recipient) if body.recipient else None,
    )

    if request is None:
        message = "Verification rejected; no mint staged"
    else:
        message = f"Verification approved; mint {request.state.value}"

    return VerificationResponse(
        verification_id=record.id,
        fingerprint=record.fingerprint,
        decision=record.decision.value,
        mint_request_id=request.id if request else None,
        mint_state=request.state.value if request else None,
        message=message
    )


@router.post("/fingerprints", response_model=FingerprintResponse)
async def create_fingerprint(
    body: FingerprintRequest,
    orchestrator: MintOrchestrator = Depends(get_orchestrator)
):
    """Derive the fingerprint for a set of identity attributes."""
    fingerprint = resolve_fingerprint(None, body.identity_attributes, orchestrator.settings.FINGERPRINT_SECRET)
    return FingerprintResponse(fingerprint=fingerprint)
