"""
PearID Configuration Module
Loads environment variables and provides configuration settings for the
verification-to-mint bridge (SQLite ledger, IPFS metadata, Ethereum minting).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _markers(raw: str) -> Tuple[str, ...]:
    return tuple(m.strip().lower() for m in raw.split(",") if m.strip())


@dataclass
class Config:
    """Application configuration settings."""

    # ============ API Settings ============
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_LOG_LEVEL: str = os.getenv("API_LOG_LEVEL", "info")

    # ============ Ledger Storage ============
    DATA_DIR: str = os.getenv("DATA_DIR", "data")
    DB_PATH: str = os.getenv("DB_PATH", os.path.join(os.getenv("DATA_DIR", "data"), "pearid.db"))

    # ============ Blockchain ============
    # PearID ERC721 contract exposing mintVerified()
    MINTER_CONTRACT_ADDRESS: str = os.getenv("MINTER_CONTRACT_ADDRESS", "")

    # Explicit RPC endpoint wins over the Alchemy key
    RPC_URL: str = os.getenv("RPC_URL", "")
    ALCHEMY_KEY: str = os.getenv("ALCHEMY_KEY", "")

    # Wallet (the bridge's single signing account)
    PRIVATE_KEY: str = os.getenv("PRIVATE_KEY", "")

    # Chain settings
    CHAIN_ID: int = int(os.getenv("CHAIN_ID", "11155111"))  # Sepolia testnet
    GAS_LIMIT: int = int(os.getenv("GAS_LIMIT", "300000"))
    CONFIRMATION_DEPTH: int = int(os.getenv("CONFIRMATION_DEPTH", "3"))

    # ============ IPFS (Pinata) ============
    PINATA_API_KEY: str = os.getenv("PINATA_API_KEY", "")
    PINATA_SECRET_KEY: str = os.getenv("PINATA_SECRET_KEY", "")
    PINATA_JWT: str = os.getenv("PINATA_JWT", "")  # Alternative to API key pair

    # IPFS Gateway
    IPFS_GATEWAY: str = os.getenv("IPFS_GATEWAY", "https://gateway.pinata.cloud/ipfs")

    # ============ Mint Orchestrator ============
    WORKER_COUNT: int = int(os.getenv("WORKER_COUNT", "4"))
    MINT_MAX_ATTEMPTS: int = int(os.getenv("MINT_MAX_ATTEMPTS", "5"))
    BACKOFF_BASE_SECONDS: float = float(os.getenv("BACKOFF_BASE_SECONDS", "2.0"))
    BACKOFF_CAP_SECONDS: float = float(os.getenv("BACKOFF_CAP_SECONDS", "300.0"))
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5.0"))
    # A transaction still pending (or unknown) after this long is treated as stuck
    CONFIRMATION_TIMEOUT_SECONDS: float = float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS", "600.0"))
    CHAIN_CALL_TIMEOUT_SECONDS: float = float(os.getenv("CHAIN_CALL_TIMEOUT_SECONDS", "30.0"))
    STORE_TIMEOUT_SECONDS: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "30.0"))
    STORE_MAX_ATTEMPTS: int = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))

    # Revert reasons meaning "this identity was already minted"
    ALREADY_VERIFIED_MARKERS: Tuple[str, ...] = _markers(
        os.getenv("ALREADY_VERIFIED_MARKERS", "already verified,already minted")
    )

    # ============ Identity Fingerprints ============
    # HMAC key for deriving fingerprints from identity attributes
    FINGERPRINT_SECRET: str = os.getenv("FINGERPRINT_SECRET", "")

    # ============ Orphaned Metadata ============
    # 0 retains orphaned metadata blobs indefinitely
    ORPHAN_GRACE_SECONDS: float = float(os.getenv("ORPHAN_GRACE_SECONDS", "0"))

    @property
    def ALCHEMY_RPC_URL(self) -> str:
        """Get Alchemy RPC URL for Sepolia testnet."""
        return f"https://eth-sepolia.g.alchemy.com/v2/{self.ALCHEMY_KEY}"

    @property
    def CHAIN_RPC_URL(self) -> str:
        """RPC endpoint used by the chain client."""
        return self.RPC_URL or self.ALCHEMY_RPC_URL

    @property
    def SEPOLIA_EXPLORER_URL(self) -> str:
        """Get Etherscan URL for Sepolia."""
        return "https://sepolia.etherscan.io"

    def get_tx_url(self, tx_hash: str) -> str:
        """Get Etherscan URL for a transaction."""
        return f"{self.SEPOLIA_EXPLORER_URL}/tx/{tx_hash}"

    def get_ipfs_url(self, cid: str) -> str:
        """Get IPFS gateway URL for a CID."""
        return f"{self.IPFS_GATEWAY}/{cid}"

    def ensure_data_dir(self) -> None:
        """Create the directory holding the ledger database."""
        Path(self.DB_PATH).parent.mkdir(parents=True, exist_ok=True)

    def is_blockchain_configured(self) -> bool:
        """Check if blockchain is properly configured."""
        return bool(
            self.MINTER_CONTRACT_ADDRESS and
            (self.RPC_URL or self.ALCHEMY_KEY) and
            self.PRIVATE_KEY
        )

    def is_ipfs_configured(self) -> bool:
        """Check if IPFS is properly configured."""
        return bool(
            self.PINATA_JWT or
            (self.PINATA_API_KEY and self.PINATA_SECRET_KEY)
        )

    def orphan_collection_enabled(self) -> bool:
        return self.ORPHAN_GRACE_SECONDS > 0


# Global config instance
config = Config()
