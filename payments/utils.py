"""Signature helpers for gateway callbacks."""

import base64
import hashlib
import hmac


def _bytes(value) -> bytes:
    return value if isinstance(value, (bytes, bytearray)) else str(value).encode("utf-8")


def hmac_sha256_hex(secret: str, message) -> str:
    return hmac.new(_bytes(secret), _bytes(message), hashlib.sha256).hexdigest()


def hmac_sha256_b64(secret: str, message) -> str:
    digest = hmac.new(_bytes(secret), _bytes(message), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def signatures_match(expected: str, received: str | None) -> bool:
    # compare_digest only accepts ASCII str; bytes take anything a client sends
    received = (received or "").strip().encode("utf-8", "replace")
    return hmac.compare_digest(expected.encode("utf-8"), received)


def checkout_signature(order_ref: str, payment_ref: str, secret: str) -> str:
    """Signature the checkout widget returns: HMAC-SHA256("<order>|<payment>")."""
    return hmac_sha256_hex(secret, f"{order_ref}|{payment_ref}")


def verify_checkout_signature(order_ref: str, payment_ref: str, signature: str, secret: str) -> bool:
    return signatures_match(checkout_signature(order_ref, payment_ref, secret), signature)
