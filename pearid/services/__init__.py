"""
PearID Services Package
Provides the blockchain, IPFS, nonce and mint orchestration services.
"""

from pearid.config import Config, config
from pearid.database import VerificationLedger
from pearid.services.blockchain import BlockchainService
from pearid.services.ipfs import IPFSService
from pearid.services.nonces import NonceAllocator
from pearid.services.orchestrator import MintOrchestrator


def build_orchestrator(settings: Config = None) -> MintOrchestrator:
    """Wire the ledger, chain and IPFS clients into an orchestrator."""
    settings = settings or config
    settings.ensure_data_dir()
    ledger = VerificationLedger(settings.DB_PATH)
    chain = BlockchainService(
        rpc_url=settings.CHAIN_RPC_URL,
        contract_address=settings.MINTER_CONTRACT_ADDRESS,
        private_key=settings.PRIVATE_KEY,
        chain_id=settings.CHAIN_ID,
        gas_limit=settings.GAS_LIMIT,
    )
    blob_store = IPFSService(
        pinata_api_key=settings.PINATA_API_KEY,
        pinata_secret_key=settings.PINATA_SECRET_KEY,
        pinata_jwt=settings.PINATA_JWT,
        gateway_url=settings.IPFS_GATEWAY,
        timeout=settings.STORE_TIMEOUT_SECONDS,
    )
    return MintOrchestrator(ledger, chain, blob_store, settings=settings)


__all__ = [
    'BlockchainService',
    'IPFSService',
    'MintOrchestrator',
    'NonceAllocator',
    'build_orchestrator',
]
