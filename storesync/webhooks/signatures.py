from __future__ import annotations

import base64
import hashlib
import hmac

PREFIX = "sha256="


def _digest(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


def sign(secret: str, body: bytes) -> str:
    """``sha256=<hex>`` as sent in ``X-WC-Signature`` by the sync plugin."""

    return PREFIX + _digest(secret, body).hex()


def verify(secret: str, body: bytes, signature: str | None) -> bool:
    """Accept the plugin's ``sha256=<hex>`` form or WooCommerce's native base64 digest."""

    if not signature:
        return False
    candidate = signature.strip()
    digest = _digest(secret, body)
    if candidate.lower().startswith(PREFIX):
        return hmac.compare_digest(candidate[len(PREFIX):].lower(), digest.hex())
    return hmac.compare_digest(candidate, base64.b64encode(digest).decode("ascii"))
