"""Webhook signature verification.

WHAT:
    Validates that a webhook body was signed by the storefront platform
    with our shared secret (Shopify-style HMAC-SHA256, base64 encoded).

WHY:
    The order-paid webhook enqueues Purchase events. An unsigned or
    tampered request must be rejected before anything is parsed or stored.

IMPORTANT:
    Always verify the RAW request bytes. Parsing and re-serializing JSON
    changes the byte representation and breaks verification.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Shopify-Hmac-SHA256"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return base64(HMAC-SHA256(secret, raw_body))."""
    return base64.b64encode(
        hmac.new(
            secret.encode("utf-8"),
            raw_body,
            hashlib.sha256
        ).digest()
    ).decode("utf-8")


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> bool:
    """Verify that webhook request came from the storefront using HMAC.

    Args:
        raw_body: Raw (unparsed) request body bytes
        signature_header: X-Shopify-Hmac-SHA256 header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise (fails closed)
    """
    if not secret:
        logger.error("[WEBHOOK_SIGNATURE] Webhook secret not configured")
        return False

    if not signature_header:
        logger.warning("[WEBHOOK_SIGNATURE] Missing HMAC header")
        return False

    if not isinstance(raw_body, (bytes, bytearray)):
        logger.warning("[WEBHOOK_SIGNATURE] Body is not raw bytes")
        return False

    expected = compute_signature(bytes(raw_body), secret).encode("utf-8")
    provided = signature_header.strip().encode("utf-8")

    if len(expected) != len(provided):
        logger.warning("[WEBHOOK_SIGNATURE] Signature length mismatch")
        return False

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected, provided)

    if not is_valid:
        logger.warning("[WEBHOOK_SIGNATURE] Invalid HMAC signature")

    return is_valid
