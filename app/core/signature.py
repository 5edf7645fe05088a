"""
Stripe webhook signature verification.

Header format: ``t=<unix-seconds>,v1=<hex-hmac-sha256>[,v1=...]``. The HMAC is
computed over ``"{t}.{raw_body}"`` with the endpoint secret. The HMAC check
itself is the stripe SDK's ``WebhookSignature.verify_header``; the timestamp
window is checked here against an injectable clock.
"""
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable

import stripe

from app.core.exceptions import SignatureError

SIGNATURE_SCHEME = "v1"


@dataclass(frozen=True)
class ParsedSignature:
    timestamp: int
    signatures: list[str]


def parse_signature_header(header: str | None) -> ParsedSignature:
    """פירוק כותרת החתימה ל-timestamp ורשימת חתימות v1"""
    if not header:
        raise SignatureError("Missing signature header", reason="missing_header")

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t" and timestamp is None:
            timestamp = value
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise SignatureError("Malformed signature header", reason="malformed_header")

    try:
        parsed_timestamp = int(timestamp)
    except ValueError:
        raise SignatureError("Invalid timestamp in signature header", reason="invalid_timestamp")

    return ParsedSignature(timestamp=parsed_timestamp, signatures=signatures)


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: Callable[[], float] = time.time,
) -> int:
    """
    Verify a webhook payload against its signature header.

    Returns the signed timestamp. Raises SignatureError when the secret is
    missing, when no v1 entry matches, or when the timestamp falls outside
    the tolerance window.
    """
    if not secret:
        raise SignatureError("Webhook secret is not configured", reason="missing_secret")

    parsed = parse_signature_header(header)
    try:
        # tolerance=None: the SDK would compare against the wall clock
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), header, secret, tolerance=None)
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        raise SignatureError("No signatures found matching the expected signature", reason="mismatch")

    if abs(int(now()) - parsed.timestamp) > tolerance_seconds:
        raise SignatureError("Timestamp outside the tolerance zone", reason="stale_timestamp")

    return parsed.timestamp


def build_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Produce a header in the gateway's format (used by tests and local replay tooling)"""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(payload, ts, secret)}"
