"""Shared route dependencies."""

from fastapi import HTTPException, Request, status

from pearid.services.orchestrator import MintOrchestrator


def get_orchestrator(request: Request) -> MintOrchestrator:
    """Orchestrator installed on the app by create_app()."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Mint orchestrator not initialized"
        )
    return orchestrator
