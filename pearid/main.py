"""
PearID FastAPI Main Application
Entry point for the verification-to-mint bridge.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from pearid import __version__
from pearid.config import Config, config
from pearid.errors import (
    BridgeError,
    ContentNotFound,
    ContractRevert,
    DuplicateApproval,
    InvalidFingerprint,
    InvalidTransition,
    MintRequestExists,
    MintRequestNotFound,
    NotCancellable,
    NotRetryable,
    StaleRecord,
    StoreUnavailable,
    TransientChainError,
    UnknownVerification,
)
from pearid.routes import history, mints, verification
from pearid.services import build_orchestrator
from pearid.services.orchestrator import MintOrchestrator

logger = logging.getLogger(__name__)

# HTTP status per bridge error; anything unlisted is a 500
ERROR_STATUS = {
    InvalidFingerprint: 422,
    DuplicateApproval: 409,
    MintRequestExists: 409,
    StaleRecord: 409,
    InvalidTransition: 409,
    NotCancellable: 409,
    NotRetryable: 409,
    UnknownVerification: 404,
    MintRequestNotFound: 404,
    ContentNotFound: 404,
    ContractRevert: 502,
    StoreUnavailable: 503,
    TransientChainError: 503,
}


def error_status(error: BridgeError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


def create_app(
    orchestrator: MintOrchestrator = None,
    settings: Config = None,
    run_workers: bool = True
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator: Prebuilt orchestrator; built from settings at startup when omitted
        settings: Configuration; defaults to the global config
        run_workers: Start the orchestrator's workers (and crash recovery) with the app
    """
    settings = settings or (orchestrator.settings if orchestrator else config)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        owned = app.state.orchestrator is None
        if owned:
            app.state.orchestrator = build_orchestrator(settings)
            if not settings.is_blockchain_configured():
                logger.warning("Blockchain not configured; mints will fail until it is")
            if not settings.is_ipfs_configured():
                logger.warning("IPFS not configured; metadata staging will fail until it is")

        running = app.state.orchestrator
        if run_workers:
            await running.start()
        try:
            yield
        finally:
            if run_workers:
                await running.stop()
            if owned:
                await running.blob_store.close()

    app = FastAPI(
        title="PearID Verification Bridge",
        description="Bridges approved identity verifications to exactly one on-chain identity mint",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=_lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BridgeError, bridge_error_handler)

    # Include routers
    app.include_router(verification.router, prefix="/api", tags=["Verification"])
    app.include_router(history.router, prefix="/api", tags=["History"])
    app.include_router(mints.router, prefix="/api", tags=["Mints"])

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        running = request.app.state.orchestrator
        return {
            "status": "healthy",
            "service": "PearID Verification Bridge",
            "version": __version__,
            "blockchain_configured": settings.is_blockchain_configured(),
            "ipfs_configured": settings.is_ipfs_configured(),
            "chain_connected": await running.chain.is_connected() if running else False,
            "orchestrator": running.stats() if running else None,
        }

    return app


logging.basicConfig(
    level=config.API_LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "pearid.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.API_LOG_LEVEL,
    )
