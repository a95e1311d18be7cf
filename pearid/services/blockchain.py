"""
PearID Blockchain Service
Ethereum integration for submitting identity mints and observing their confirmation.
"""

import asyncio
import logging
from typing import Any, Dict

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from pearid.config import config
from pearid.errors import BridgeError, ContractRevert, TransientChainError
from pearid.models import MintCall, TxStatus

logger = logging.getLogger(__name__)


# PearID identity token - minimal interface used by the bridge
MINTER_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "idempotencyKey", "type": "bytes32"},
            {"name": "tokenURI", "type": "string"}
        ],
        "name": "mintVerified",
        "outputs": [{"name": "tokenId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "idempotencyKey", "type": "bytes32"}],
        "name": "verifiedUsers",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": True, "name": "idempotencyKey", "type": "bytes32"},
            {"indexed": False, "name": "tokenId", "type": "uint256"}
        ],
        "name": "IdentityMinted",
        "type": "event"
    }
]

# Substrings of RPC error messages, mapped to transient error kinds
TRANSIENT_PATTERNS = [
    ("nonce too low", "nonce"),
    ("nonce too high", "nonce"),
    ("already known", "nonce"),
    ("replacement transaction underpriced", "underpriced"),
    ("transaction underpriced", "underpriced"),
    ("max fee per gas less than block base fee", "underpriced"),
    ("fee cap less than block base fee", "underpriced"),
    ("insufficient funds", "funds"),
]


def _error_message(exc: BaseException) -> str:
    """Extract the RPC message from web3 errors (dict payloads or plain text)."""
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", exc.args[0]))
    return str(exc)


def classify_chain_error(exc: BaseException) -> BridgeError:
    """
    Map a web3 / transport exception onto the bridge error taxonomy.

    Contract reverts become ContractRevert; everything else the node or the
    network can throw at us is a TransientChainError with a kind.
    """
    if isinstance(exc, BridgeError):
        return exc

    if isinstance(exc, ContractLogicError):
        reason = _error_message(exc)
        if reason.lower().startswith("execution reverted:"):
            reason = reason.split(":", 1)[1].strip()
        return ContractRevert(reason or "execution reverted")

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, TimeExhausted)):
        return TransientChainError(f"Chain call timed out: {exc}", kind="timeout")

    message = _error_message(exc)
    lowered = message.lower()
    for pattern, kind in TRANSIENT_PATTERNS:
        if pattern in lowered:
            return TransientChainError(message, kind=kind)

    if "execution reverted" in lowered:
        return ContractRevert(message.split(":", 1)[1].strip() if ":" in message else message)

    return TransientChainError(f"Chain error: {message}", kind="network")


class BlockchainService:
    """
    Chain client for the PearID identity token.

    Contract:
    - submit(MintCall, nonce) -> tx handle (0x-prefixed hash)
    - get_status(tx handle) -> TxStatus
    - next_nonce() -> pending transaction count of the signing account
    """

    def __init__(
        self,
        rpc_url: str = None,
        contract_address: str = None,
        private_key: str = None,
        chain_id: int = None,
        gas_limit: int = None
    ):
        """Initialize blockchain service with an async RPC connection."""
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            rpc_url or config.CHAIN_RPC_URL,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=config.CHAIN_CALL_TIMEOUT_SECONDS)},
        ))
        self.chain_id = chain_id or config.CHAIN_ID
        self.gas_limit = gas_limit or config.GAS_LIMIT

        # Load account from private key
        key = private_key or config.PRIVATE_KEY
        self.account = Account.from_key(key) if key else None

        # Load contract
        address = contract_address or config.MINTER_CONTRACT_ADDRESS
        if address:
            self.contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=MINTER_ABI
            )
        else:
            self.contract = None

    @property
    def address(self) -> str:
        """Signing account address (the nonce sequence owner)."""
        if not self.account:
            raise TransientChainError("Blockchain wallet not configured", kind="network")
        return self.account.address

    def is_configured(self) -> bool:
        return self.account is not None and self.contract is not None

    async def is_connected(self) -> bool:
        """Check if connected to blockchain."""
        try:
            return await self.w3.is_connected()
        except (Web3Exception, aiohttp.ClientError, OSError):
            return False

    async def next_nonce(self) -> int:
        """Pending transaction count of the signing account."""
        try:
            return await self.w3.eth.get_transaction_count(self.address, "pending")
        except Exception as e:
            raise classify_chain_error(e) from e

    async def _gas_params(self) -> Dict[str, int]:
        """
        EIP-1559 gas parameters.

        Max fee = (base fee * 2) + priority fee; the *2 buffer absorbs base fee
        increases between blocks. Falls back to legacy gasPrice on chains
        without a base fee.
        """
        latest_block = await self.w3.eth.get_block("latest")
        base_fee = latest_block.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": await self.w3.eth.gas_price}

        priority_fee = Web3.to_wei(2, "gwei")
        return {
            "maxFeePerGas": (base_fee * 2) + priority_fee,
            "maxPriorityFeePerGas": priority_fee,
        }

    async def submit(self, call: MintCall, nonce: int) -> str:
        """
        Sign and broadcast a mint transaction with the given nonce.

        Returns:
            Transaction hash (0x-prefixed)

        Raises:
            ContractRevert: the call reverts (e.g. identity already verified)
            TransientChainError: timeouts, nonce conflicts, underpriced gas
        """
        if not self.is_configured():
            raise TransientChainError("Blockchain not configured properly", kind="network")

        recipient = Web3.to_checksum_address(call.recipient) if call.recipient else self.address
        key_bytes = bytes.fromhex(call.idempotency_key[2:])

        try:
            function = self.contract.functions.mintVerified(recipient, key_bytes, call.token_uri)
            tx = await function.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gas": self.gas_limit,
                "chainId": self.chain_id,
                **(await self._gas_params())
            })

            signed_tx = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception as e:
            raise classify_chain_error(e) from e

        tx_hex = tx_hash.hex()
        if not tx_hex.startswith("0x"):
            tx_hex = "0x" + tx_hex
        logger.info(f"Broadcast mint for {call.fingerprint}: nonce={nonce} tx={tx_hex}")
        return tx_hex

    async def get_status(self, tx_handle: str) -> TxStatus:
        """
        Observe a broadcast transaction.

        Returns:
            Confirmed(depth) once mined successfully, Reverted(reason) if mined
            with status 0, Pending while in the mempool, Unknown if the node
            knows nothing about it (dropped or never propagated).
        """
        try:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_handle)
            except TransactionNotFound:
                try:
                    await self.w3.eth.get_transaction(tx_handle)
                except TransactionNotFound:
                    return TxStatus.unknown()
                return TxStatus.pending()

            if receipt["status"] != 1:
                return TxStatus.reverted(await self._revert_reason(tx_handle, receipt))

            latest = await self.w3.eth.block_number
            return TxStatus.confirmed(max(0, latest - receipt["blockNumber"] + 1))
        except Exception as e:
            raise classify_chain_error(e) from e

    async def _revert_reason(self, tx_handle: str, receipt: Dict[str, Any]) -> str:
        """Replay a reverted transaction at its block to recover the reason string."""
        tx = await self.w3.eth.get_transaction(tx_handle)
        replay = {
            "from": tx["from"],
            "to": tx["to"],
            "data": tx["input"],
            "value": tx.get("value", 0),
        }
        try:
            await self.w3.eth.call(replay, receipt["blockNumber"])
        except ContractLogicError as e:
            revert = classify_chain_error(e)
            return revert.reason if isinstance(revert, ContractRevert) else str(e)
        except Web3Exception as e:
            logger.warning(f"Could not replay {tx_handle}: {e}")
        return "execution reverted"

