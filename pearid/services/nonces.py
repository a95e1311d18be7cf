"""
PearID Nonce Allocator
Serialized allocation of the signing account's transaction nonces.
"""

import asyncio
import logging
from typing import Optional

from pearid.database import VerificationLedger

logger = logging.getLogger(__name__)


class NonceAllocator:
    """
    Hands out nonces for the single signing account.

    The counter is persisted in the ledger so a restart never reissues a
    nonce it already handed out; it is floored by the chain's pending count
    so nonces consumed outside the bridge are skipped. Only the orchestrator's
    submission path allocates, one caller at a time.
    """

    def __init__(self, ledger: VerificationLedger, chain):
        self.ledger = ledger
        self.chain = chain
        self._lock = asyncio.Lock()

    async def allocate(self) -> int:
        async with self._lock:
            floor = await self.chain.next_nonce()
            nonce = self.ledger.reserve_nonce(self.chain.address, floor)
            logger.debug(f"Allocated nonce {nonce} for {self.chain.address}")
            return nonce

    async def resync(self, exclude_request_id: Optional[int] = None) -> int:
        """
        Reset the counter to the chain's pending count.

        Used after nonce conflicts and stuck transactions, which is also how
        gaps left by reserved-but-never-broadcast nonces get filled. Nonces
        still held by other requests awaiting broadcast are never handed out
        again; `exclude_request_id` is the request giving its nonce up.
        """
        async with self._lock:
            floor = await self.chain.next_nonce()
            held = self.ledger.highest_unbroadcast_nonce(exclude_request_id)
            if held is not None:
                floor = max(floor, held + 1)
            self.ledger.reset_nonce(self.chain.address, floor)
            logger.info(f"Nonce counter for {self.chain.address} resynced to {floor}")
            return floor

    async def release(self, nonce: int) -> bool:
        """Return a reserved nonce whose transaction was never broadcast."""
        async with self._lock:
            released = self.ledger.release_nonce(self.chain.address, nonce)
            if released:
                logger.debug(f"Released nonce {nonce} for {self.chain.address}")
            return released
