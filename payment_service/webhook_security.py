"""
Webhook signature verification for payment processor callbacks.

Header format: ``X-Payment-Signature: t=<unix seconds>,v1=<hex digest>[,v1=<hex digest>]``
where each digest is HMAC-SHA256(secret, "<t>." + raw body). Several v1 entries
may be present while a secret is being rotated.
"""
import hashlib
import hmac
import logging
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Payment-Signature"

class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

def sign_payload(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a header value; used by tests and local tooling."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(secret, timestamp, payload)}"

def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Signature header is missing t or v1")
    return timestamp, signatures

class WebhookVerifier:
    def __init__(self, secret: str, tolerance_seconds: int = 300, clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("webhook secret must be configured")
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, payload: bytes, header: Optional[str]) -> None:
        """Raise WebhookSignatureError unless the payload was signed with our secret recently."""
        if not header:
            raise WebhookSignatureError("Missing signature header")
        timestamp, signatures = parse_signature_header(header)

        age = abs(self.clock() - timestamp)
        if age > self.tolerance_seconds:
            logger.warning(f"Rejected webhook outside tolerance window: age={age:.0f}s")
            raise WebhookSignatureError("Signature timestamp outside tolerance")

        expected = compute_signature(self.secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            logger.warning("Rejected webhook with invalid signature")
            raise WebhookSignatureError("Invalid signature")
