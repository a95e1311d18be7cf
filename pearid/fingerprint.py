"""
PearID Fingerprints
Derives stable, privacy-preserving identity fingerprints and the
fingerprint-scoped idempotency keys used for minting.
"""

import hashlib
import hmac
import json
import re
from typing import Any, Dict, Union

from pearid.config import config
from pearid.errors import InvalidFingerprint


FINGERPRINT_PATTERN = re.compile(r"^[A-Za-z0-9:_\-]{1,128}$")


def compute_sha256(data: Union[bytes, str]) -> str:
    """Compute SHA256 hash of data."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def validate_fingerprint(fingerprint: str) -> str:
    """Return the fingerprint unchanged, or raise InvalidFingerprint."""
    if not isinstance(fingerprint, str) or not FINGERPRINT_PATTERN.match(fingerprint):
        raise InvalidFingerprint(
            "Fingerprint must be 1-128 characters of [A-Za-z0-9:_-]",
            fingerprint=fingerprint if isinstance(fingerprint, str) else None,
        )
    return fingerprint


def normalize_attribute(value: Any) -> str:
    """Trim, collapse internal whitespace and case-fold one attribute value."""
    return " ".join(str(value).split()).casefold()


def normalize_attributes(attributes: Dict[str, Any]) -> Dict[str, str]:
    """
    Normalize identity attributes before hashing.

    Keys are normalized the same way as values; attributes whose value is
    empty after normalization are dropped so that "" and None do not change
    the fingerprint.
    """
    normalized = {}
    for key, value in attributes.items():
        if value is None:
            continue
        norm_value = normalize_attribute(value)
        if norm_value:
            normalized[normalize_attribute(key)] = norm_value
    return normalized


def derive_fingerprint(attributes: Dict[str, Any], secret: str = None) -> str:
    """
    Derive an identity fingerprint from verified identity attributes.

    Args:
        attributes: Identity attributes (e.g. document number, name, birth date)
        secret: HMAC key; defaults to FINGERPRINT_SECRET

    Returns:
        Hex-encoded HMAC-SHA256 over the canonical JSON of the normalized attributes
    """
    key = secret if secret is not None else config.FINGERPRINT_SECRET
    if not key:
        raise ValueError("Fingerprint secret not configured")

    normalized = normalize_attributes(attributes)
    if not normalized:
        raise InvalidFingerprint("No identity attributes to fingerprint")

    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hmac.new(key.encode('utf-8'), canonical.encode('utf-8'), hashlib.sha256).hexdigest()


def idempotency_key(fingerprint: str) -> str:
    """
    Fingerprint-scoped idempotency key passed to the contract as bytes32.

    Every submission for the same fingerprint carries the same key, so the
    contract's verifiedUsers guard rejects any second mint.
    """
    return "0x" + compute_sha256(validate_fingerprint(fingerprint))
