"""Webhook signature helpers: HMAC-SHA512 over the raw request body."""

import hashlib
import hmac


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_payload(raw_body: bytes, signature: str, secret: str) -> bool:
    """Constant-time comparison. An unset secret verifies nothing."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(raw_body, secret), signature)
