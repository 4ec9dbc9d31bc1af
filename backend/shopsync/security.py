"""Shopify webhook signature verification.

WHAT: HMAC-SHA256 over the raw request body, base64 encoded, compared in
      constant time with the X-Shopify-Hmac-Sha256 header
WHY: Prevent forged webhook calls; the body must be verified byte-for-byte
     before it is parsed
REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
"""

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of `raw_body` keyed with `secret`."""
    return base64.b64encode(
        hmac.new(
            secret.encode("utf-8"),
            raw_body,
            hashlib.sha256,
        ).digest()
    ).decode("utf-8")


def verify_webhook_signature(
    raw_body: bytes,
    provided_signature: Optional[str],
    secret: Optional[str],
    *,
    test_mode: bool = False,
    bypass_token: Optional[str] = None,
) -> bool:
    """Verify that a webhook request came from Shopify.

    Never raises: a missing secret, a missing header, malformed base64 and a
    plain mismatch all return False.

    Args:
        raw_body: Raw request body bytes (not re-serialized JSON)
        provided_signature: X-Shopify-Hmac-Sha256 header value
        secret: Shared webhook secret
        test_mode: Only when True is `bypass_token` honored
        bypass_token: Literal header value accepted in test mode

    Returns:
        True if the signature is valid, False otherwise
    """
    if not provided_signature:
        logger.warning("[WEBHOOK] Missing HMAC header")
        return False

    if test_mode and bypass_token and hmac.compare_digest(
        provided_signature.encode("utf-8"), bypass_token.encode("utf-8")
    ):
        logger.warning("[WEBHOOK] Signature bypassed (test mode)")
        return True

    if not secret:
        logger.error("[WEBHOOK] SHOPIFY_WEBHOOK_SECRET not configured")
        return False

    try:
        provided = base64.b64decode(provided_signature, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("[WEBHOOK] Malformed HMAC header")
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected, provided)

    if not is_valid:
        logger.warning("[WEBHOOK] Invalid HMAC signature")

    return is_valid
