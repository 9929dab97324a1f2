"""
Webhook signature verification.
"""

import hashlib
import hmac
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    required: bool

    def verify(self, payload: bytes, signature_header: Optional[str]) -> bool:
        ...


class AcceptAllSignatureVerifier:
    """Used when no shared secret is configured."""

    required = False

    def verify(self, payload: bytes, signature_header: Optional[str]) -> bool:
        return True


class HmacSignatureVerifier:
    """Hex HMAC-SHA256 of the raw body, optionally prefixed with "sha256="."""

    required = True

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("HMAC signature secret must not be empty")
        self._secret = secret.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature_header: Optional[str]) -> bool:
        if not signature_header:
            return False
        provided = signature_header.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):]
        # compare_digest only accepts ASCII str, so compare bytes
        expected = self.sign(payload).encode("ascii")
        return hmac.compare_digest(expected, provided.lower().encode("utf-8", "replace"))


def build_signature_verifier(secret: Optional[str]) -> SignatureVerifier:
    if secret:
        logger.info("Webhook signatures verified with HMAC-SHA256")
        return HmacSignatureVerifier(secret)
    return AcceptAllSignatureVerifier()
