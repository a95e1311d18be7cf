"""
PearID Verification-to-Mint Bridge

Turns off-chain identity verification decisions into exactly one
on-chain identity token per verified user:
- SQLite ledger for verification decisions and mint state
- IPFS (Pinata) for token metadata
- Ethereum for the ERC721 identity mint

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "PearID Team"
