"""Tests for webhook signature verification.

WHAT: verify_webhook_signature accepts exactly the HMAC Shopify would send
WHY: Every inbound delivery is authenticated here; it must never raise

REFERENCES:
  - shopsync/security.py
"""

import base64

from shopsync.security import compute_signature, verify_webhook_signature

from .conftest import WEBHOOK_SECRET, sign

BODY = b'{"id": 12345, "order_number": "TEST-001"}'


class TestVerifyWebhookSignature:
    def test_valid_signature(self):
        """Signature computed over the raw body with the shared secret verifies."""
        assert verify_webhook_signature(BODY, sign(BODY), WEBHOOK_SECRET) is True

    def test_compute_signature_matches_reference(self):
        assert compute_signature(BODY, WEBHOOK_SECRET) == sign(BODY)

    def test_single_byte_change_in_body_fails(self):
        signature = sign(BODY)
        tampered = BODY.replace(b"12345", b"12346")
        assert verify_webhook_signature(tampered, signature, WEBHOOK_SECRET) is False

    def test_reserialized_body_fails(self):
        """Whitespace differences matter: the raw bytes are signed, not the JSON value."""
        signature = sign(BODY)
        compact = b'{"id":12345,"order_number":"TEST-001"}'
        assert verify_webhook_signature(compact, signature, WEBHOOK_SECRET) is False

    def test_wrong_secret_fails(self):
        assert verify_webhook_signature(BODY, sign(BODY, "other-secret"), WEBHOOK_SECRET) is False

    def test_missing_signature_fails(self):
        assert verify_webhook_signature(BODY, None, WEBHOOK_SECRET) is False
        assert verify_webhook_signature(BODY, "", WEBHOOK_SECRET) is False

    def test_missing_secret_fails(self):
        assert verify_webhook_signature(BODY, sign(BODY), None) is False
        assert verify_webhook_signature(BODY, sign(BODY), "") is False

    def test_malformed_base64_fails_without_raising(self):
        assert verify_webhook_signature(BODY, "not base64!!", WEBHOOK_SECRET) is False
        assert verify_webhook_signature(BODY, "abc", WEBHOOK_SECRET) is False

    def test_non_ascii_signature_fails_without_raising(self):
        assert verify_webhook_signature(BODY, "sïgnature", WEBHOOK_SECRET) is False

    def test_truncated_signature_fails(self):
        digest = base64.b64decode(sign(BODY))
        truncated = base64.b64encode(digest[:16]).decode("utf-8")
        assert verify_webhook_signature(BODY, truncated, WEBHOOK_SECRET) is False

    def test_empty_body(self):
        assert verify_webhook_signature(b"", sign(b""), WEBHOOK_SECRET) is True


class TestBypassToken:
    def test_bypass_accepted_only_in_test_mode(self):
        assert verify_webhook_signature(
            BODY, "test-hmac", WEBHOOK_SECRET, test_mode=True, bypass_token="test-hmac"
        ) is True

    def test_bypass_rejected_outside_test_mode(self):
        assert verify_webhook_signature(
            BODY, "test-hmac", WEBHOOK_SECRET, test_mode=False, bypass_token="test-hmac"
        ) is False

    def test_test_mode_still_accepts_real_signature(self):
        assert verify_webhook_signature(
            BODY, sign(BODY), WEBHOOK_SECRET, test_mode=True, bypass_token="test-hmac"
        ) is True

    def test_test_mode_without_token_configured(self):
        assert verify_webhook_signature(BODY, "test-hmac", WEBHOOK_SECRET, test_mode=True, bypass_token=None) is False
