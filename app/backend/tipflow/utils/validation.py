"""
EVM data validation utilities.
Provides address normalization and webhook payload helpers.
"""

import hashlib
import hmac
from typing import Any, Optional

from web3 import Web3

import structlog
from tipflow.core.exceptions import ValidationError


logger = structlog.get_logger(__name__)


def is_valid_address(address: Any) -> bool:
    """True for any 20-byte hex address, regardless of checksum casing."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False
    return Web3.is_address(address.lower())


def normalize_address(address: Optional[str]) -> str:
    """
    Canonical lower-case form of an EVM address.

    Every address written to or compared in the database goes through here.

    Raises:
        ValidationError: if the value is not an address
    """
    if not address or not is_valid_address(address.strip()):
        raise ValidationError(f"Invalid EVM address: {address!r}", {"address": address})
    return address.strip().lower()


def parse_fid(value: Any) -> Optional[int]:
    """Positive integer FID or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        fid = int(value)
    except (TypeError, ValueError):
        return None
    return fid if fid > 0 else None


def compute_webhook_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA512 of a raw webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of a webhook signature header."""
    if not signature:
        return False
    expected = compute_webhook_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())
