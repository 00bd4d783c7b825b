"""
Webhook authenticity — HMAC-SHA256 signatures and the replay window.

The registry signs every delivery as
    X-Mahilo-Signature: sha256=<hex(HMAC-SHA256(secret, "<timestamp>.<raw body>"))>
    X-Mahilo-Timestamp: <unix seconds>

Depends on: config
"""

import hashlib
import hmac
import time
from typing import Optional, Union

from mahilo.config import SIGNATURE_PREFIX, TIMESTAMP_TOLERANCE_SECONDS


def _as_bytes(value: Union[bytes, str]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(raw_body: Union[bytes, str], timestamp: Union[int, str], secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of "<timestamp>.<raw_body>"."""
    payload = f"{timestamp}.".encode("utf-8") + _as_bytes(raw_body)
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signature_header(raw_body: Union[bytes, str], timestamp: Union[int, str], secret: str) -> str:
    """Return the full X-Mahilo-Signature header value."""
    return SIGNATURE_PREFIX + compute_signature(raw_body, timestamp, secret)


def is_timestamp_fresh(timestamp: Union[int, str], now: Optional[float] = None,
                       tolerance: int = TIMESTAMP_TOLERANCE_SECONDS) -> bool:
    """Check a unix-seconds timestamp is within `tolerance` of now, in either direction."""
    if now is None:
        now = time.time()
    try:
        return abs(now - int(timestamp)) <= tolerance
    except (TypeError, ValueError, OverflowError):
        return False


def verify_signature(raw_body: Union[bytes, str], signature: Optional[str],
                     timestamp: Optional[str], secret: Optional[str],
                     now: Optional[float] = None) -> bool:
    """Verify a webhook delivery. Never raises; any malformed input is False.

    raw_body must be the exact bytes received, not a re-serialized form.
    """
    if not signature or not timestamp or not secret:
        return False
    if not is_timestamp_fresh(timestamp, now):
        return False
    try:
        expected = signature_header(raw_body, timestamp, secret)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
    except (TypeError, ValueError, UnicodeError):
        return False
