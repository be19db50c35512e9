"""Webhook signing — per-endpoint secrets and timestamped HMAC-SHA256 signatures.

Signatures cover ``f"{timestamp}.{payload}"`` so a captured request cannot be
replayed outside the freshness window. Receivers must verify against the raw
request body exactly as sent.
"""

import hashlib
import hmac
import re
import secrets
import time
from collections.abc import Mapping
from typing import Optional, Union

SECRET_PREFIX = "whsec_"
SECRET_HEX_LENGTH = 48
SECRET_LENGTH = len(SECRET_PREFIX) + SECRET_HEX_LENGTH
SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300

_SECRET_RE = re.compile(rf"{SECRET_PREFIX}[0-9a-f]{{{SECRET_HEX_LENGTH}}}")
_HASH_RE = re.compile(r"[0-9a-f]{64}")


def generate_secret() -> str:
    """Return a fresh ``whsec_``-prefixed secret with 48 random hex characters."""
    return SECRET_PREFIX + secrets.token_hex(SECRET_HEX_LENGTH // 2)


def _secret_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    return secret.encode()


def sign_payload(payload: str, secret: str, timestamp: int) -> str:
    """Generate the ``sha256=<hex>`` signature for a payload at a Unix timestamp."""
    message = f"{timestamp}.{payload}".encode()
    digest = hmac.new(_secret_key(secret), message, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def extract_signature_hash(signature: str) -> Optional[str]:
    """Return the hex digest from a ``sha256=<hex>`` header, or None if malformed."""
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return None
    digest = signature[len(SIGNATURE_PREFIX):]
    if not _HASH_RE.fullmatch(digest):
        return None
    return digest


def verify_signature(
    payload: str,
    signature: str,
    secret: str,
    timestamp: int,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Check both the HMAC and that the timestamp is within ``tolerance`` seconds of now."""
    now = time.time() if now is None else now
    if abs(int(now) - int(timestamp)) > tolerance:
        return False

    provided = extract_signature_hash(signature)
    if provided is None:
        return False
    expected = extract_signature_hash(sign_payload(payload, secret, timestamp))
    return hmac.compare_digest(provided, expected)


def is_valid_secret(secret: str) -> bool:
    return isinstance(secret, str) and len(secret) == SECRET_LENGTH and bool(_SECRET_RE.fullmatch(secret))


def verify_request(
    body: Union[str, bytes],
    headers: Mapping[str, str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
    product: str = "Vetify",
) -> bool:
    """Receiver-side helper: verify a delivered request from its body and headers.

    ``headers`` is looked up case-insensitively. Missing or non-numeric
    timestamp headers fail verification instead of raising.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(f"x-{product}-signature".lower())
    raw_ts = lowered.get(f"x-{product}-timestamp".lower())
    if not signature or not raw_ts:
        return False
    try:
        timestamp = int(raw_ts)
    except ValueError:
        return False
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return verify_signature(body, signature, secret, timestamp, tolerance=tolerance, now=now)
