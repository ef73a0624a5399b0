"""HMAC-SHA256 signatures on incoming webhooks."""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass
class SignatureCheck:
    valid: bool
    reason: Optional[str] = None


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> SignatureCheck:
    """Check a webhook body against the signature header.

    Accepts a bare hex digest or one prefixed with "sha256=".
    """
    if not signature:
        return SignatureCheck(False, f"Missing {SIGNATURE_HEADER} header")
    if not secret:
        return SignatureCheck(False, "Webhook secret not configured")

    received = signature.strip()
    if received.lower().startswith("sha256="):
        received = received[len("sha256="):]

    expected = sign_payload(body, secret)
    if not hmac.compare_digest(expected.encode(), received.lower().encode()):
        return SignatureCheck(False, "Signature mismatch")
    return SignatureCheck(True)
