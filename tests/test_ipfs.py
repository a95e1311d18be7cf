import asyncio

import httpx
import pytest

from pearid.errors import ContentNotFound, StoreUnavailable
from pearid.services.ipfs import IPFSService


def make_service(handler, jwt="test-jwt", gateway="https://gateway.pinata.cloud/ipfs"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IPFSService(pinata_jwt=jwt, pinata_api_key="", pinata_secret_key="", gateway_url=gateway, client=client)


def test_put_pins_bytes_and_returns_cid():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"IpfsHash": "bafymeta", "PinSize": 12})

    service = make_service(handler)
    cid = asyncio.run(service.put(b'{"name":"x"}', name="pearid-meta"))

    assert cid == "bafymeta"
    assert seen["url"] == IPFSService.PINATA_PIN_FILE_URL
    assert seen["auth"] == "Bearer test-jwt"
    assert b'{"name":"x"}' in seen["body"]
    assert b"pearid-meta" in seen["body"]


def test_put_maps_pinata_errors_to_unavailable():
    def handler(request):
        return httpx.Response(500, json={"error": {"reason": "INTERNAL", "message": "try later"}})

    with pytest.raises(StoreUnavailable) as exc:
        asyncio.run(make_service(handler).put(b"data"))
    assert "try later" in str(exc.value)


def test_put_without_credentials_is_unavailable():
    service = make_service(lambda request: httpx.Response(200, json={"IpfsHash": "x"}), jwt="")

    assert not service.is_configured()
    with pytest.raises(StoreUnavailable):
        asyncio.run(service.put(b"data"))


def test_get_falls_back_to_public_gateway():
    def handler(request):
        if request.url.host == "gateway.pinata.cloud":
            return httpx.Response(502)
        return httpx.Response(200, content=b"evidence")

    assert asyncio.run(make_service(handler).get("Qm111")) == b"evidence"


def test_get_not_found_only_when_every_gateway_says_so():
    with pytest.raises(ContentNotFound):
        asyncio.run(make_service(lambda request: httpx.Response(404)).get("Qm404"))

    def flaky(request):
        if request.url.host == "gateway.pinata.cloud":
            return httpx.Response(404)
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(StoreUnavailable):
        asyncio.run(make_service(flaky).get("Qm404"))


def test_unpin_treats_missing_pin_as_removed():
    calls = []

    def handler(request):
        calls.append((request.method, str(request.url)))
        return httpx.Response(404)

    assert asyncio.run(make_service(handler).unpin("bafygone")) is True
    assert calls == [("DELETE", f"{IPFSService.PINATA_UNPIN_URL}/bafygone")]

