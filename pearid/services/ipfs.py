"""
PearID IPFS Service
Content-addressed blob store backed by Pinata pinning and IPFS gateways.

Implements:
- Raw byte uploads returning a CID
- CID retrieval through the Pinata gateway with public gateway fallback
- Unpinning for orphaned metadata collection
"""

import json
import logging
from typing import Dict, Optional

import httpx

from pearid.config import config
from pearid.errors import ContentNotFound, StoreUnavailable

logger = logging.getLogger(__name__)


class IPFSService:
    """
    Blob store client using Pinata for IPFS storage.

    Contract:
    - put(bytes) -> CID
    - get(CID) -> bytes
    - Raises ContentNotFound or StoreUnavailable
    """

    # Pinata API endpoints
    PINATA_PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"
    PINATA_UNPIN_URL = "https://api.pinata.cloud/pinning/unpin"

    PUBLIC_GATEWAY_URL = "https://ipfs.io/ipfs"

    def __init__(
        self,
        pinata_api_key: str = None,
        pinata_secret_key: str = None,
        pinata_jwt: str = None,
        gateway_url: str = None,
        client: httpx.AsyncClient = None,
        timeout: float = None
    ):
        """
        Initialize IPFS service with Pinata credentials.

        Args:
            pinata_api_key: Pinata API key
            pinata_secret_key: Pinata secret key
            pinata_jwt: Pinata JWT (alternative to API key pair)
            gateway_url: IPFS gateway used for reads
            client: Preconfigured HTTP client (tests inject a mock transport)
            timeout: Per-request timeout in seconds
        """
        self.api_key = pinata_api_key or config.PINATA_API_KEY
        self.secret_key = pinata_secret_key or config.PINATA_SECRET_KEY
        self.jwt = pinata_jwt or config.PINATA_JWT
        self.gateway_url = (gateway_url or config.IPFS_GATEWAY).rstrip("/")

        self.client = client or httpx.AsyncClient(
            timeout=timeout or config.STORE_TIMEOUT_SECONDS
        )

    def _auth_headers(self) -> Dict[str, str]:
        """Build authentication headers for Pinata API."""
        if self.jwt:
            return {"Authorization": f"Bearer {self.jwt}"}
        elif self.api_key and self.secret_key:
            return {
                "pinata_api_key": self.api_key,
                "pinata_secret_api_key": self.secret_key,
            }
        return {}

    def is_configured(self) -> bool:
        """Check if IPFS service is properly configured."""
        return bool(self.jwt or (self.api_key and self.secret_key))

    @staticmethod
    def _pinata_error(response: httpx.Response) -> str:
        try:
            error_data = response.json()
        except ValueError:
            return response.text
        error = error_data.get("error", response.text)
        if isinstance(error, dict):
            return error.get("message") or error.get("reason") or response.text
        return str(error)

    async def _pin(self, url: str, **request_kwargs) -> str:
        if not self.is_configured():
            raise StoreUnavailable("IPFS service not configured")

        try:
            response = await self.client.post(url, headers=self._auth_headers(), **request_kwargs)
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"Upload failed: {e}") from e

        if response.status_code != 200:
            raise StoreUnavailable(
                f"Pinata error ({response.status_code}): {self._pinata_error(response)}"
            )

        cid = response.json().get("IpfsHash", "")
        if not cid:
            raise StoreUnavailable("Pinata response did not contain a CID")
        return cid

    async def put(self, data: bytes, name: str = None) -> str:
        """
        Store raw bytes and return their CID.

        Args:
            data: Payload to pin
            name: Optional name for the pin
        """
        metadata = {"name": name or "pearid-blob"}
        cid = await self._pin(
            self.PINATA_PIN_FILE_URL,
            files={"file": (metadata["name"], data, "application/octet-stream")},
            data={
                "pinataMetadata": json.dumps(metadata),
                "pinataOptions": json.dumps({"cidVersion": 1}),
            },
        )
        logger.info(f"Pinned {len(data)} bytes as {cid}")
        return cid

    async def get(self, cid: str) -> bytes:
        """
        Fetch content by CID.

        Tries the configured gateway first, then the public gateway. Content
        is NotFound only if every gateway answered 404; any other failure
        means the store is unavailable.
        """
        if not cid:
            raise ContentNotFound(cid)

        gateways = [f"{self.gateway_url}/{cid}"]
        if self.gateway_url != self.PUBLIC_GATEWAY_URL:
            gateways.append(f"{self.PUBLIC_GATEWAY_URL}/{cid}")

        not_found = 0
        last_error: Optional[str] = None
        for gateway_url in gateways:
            try:
                response = await self.client.get(gateway_url)
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"Gateway {gateway_url} failed: {e}")
                continue

            if response.status_code == 200:
                return response.content
            if response.status_code == 404:
                not_found += 1
                continue
            last_error = f"HTTP {response.status_code}"

        if not_found == len(gateways):
            raise ContentNotFound(cid)
        raise StoreUnavailable(f"Failed to fetch CID {cid}: {last_error}")

    async def unpin(self, cid: str) -> bool:
        """
        Unpin content from Pinata (allows garbage collection).

        Returns:
            True if Pinata removed the pin or never had it
        """
        if not self.is_configured() or not cid:
            return False

        try:
            response = await self.client.delete(
                f"{self.PINATA_UNPIN_URL}/{cid}",
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"Unpin failed: {e}") from e
        return response.status_code in (200, 404)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
