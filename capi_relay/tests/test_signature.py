"""Unit tests for webhook signature verification.

WHAT:
    HMAC-SHA256 over the raw body, base64 encoded, compared in constant time.

WHY:
    A forged or tampered orders/paid webhook must never reach the store.

REFERENCES:
    - capi_relay/services/signature.py (module under test)
"""

import json

from capi_relay.services.signature import compute_signature, verify_webhook_signature
from capi_relay.tests.conftest import sign

SECRET = "test-webhook-secret"
BODY = json.dumps({"id": 820982911946154508, "total_price": "499.00"}).encode("utf-8")


class TestVerifyWebhookSignature:
    """Accept exactly the signature Shopify would send, reject everything else."""

    def test_valid_signature_is_accepted(self):
        """WHAT: Signature computed over the exact raw bytes verifies.
        WHY: Baseline for the happy path.
        """
        assert verify_webhook_signature(BODY, sign(BODY, SECRET), SECRET) is True

    def test_compute_signature_matches_reference(self):
        """WHAT: compute_signature equals base64(HMAC-SHA256(secret, body)).
        WHY: Shopify documents exactly this encoding.
        """
        assert compute_signature(BODY, SECRET) == sign(BODY, SECRET)

    def test_tampered_body_is_rejected(self):
        """WHAT: Changing one byte of the body invalidates the signature.
        WHY: Signature covers the raw bytes, not the parsed JSON.
        """
        signature = sign(BODY, SECRET)
        tampered = BODY.replace(b"499.00", b"999.00")
        assert verify_webhook_signature(tampered, signature, SECRET) is False

    def test_reserialized_json_is_rejected(self):
        """WHAT: Semantically equal but re-serialized JSON does not verify.
        WHY: Verification must run before parsing.
        """
        signature = sign(BODY, SECRET)
        reserialized = json.dumps(json.loads(BODY), indent=2).encode("utf-8")
        assert verify_webhook_signature(reserialized, signature, SECRET) is False

    def test_wrong_secret_is_rejected(self):
        assert verify_webhook_signature(BODY, sign(BODY, "other-secret"), SECRET) is False

    def test_missing_header_is_rejected(self):
        assert verify_webhook_signature(BODY, None, SECRET) is False
        assert verify_webhook_signature(BODY, "", SECRET) is False

    def test_missing_secret_fails_closed(self):
        """WHAT: An unconfigured secret rejects every request.
        WHY: Misconfiguration must not open the webhook to anyone.
        """
        assert verify_webhook_signature(BODY, sign(BODY, SECRET), None) is False
        assert verify_webhook_signature(BODY, sign(BODY, SECRET), "") is False

    def test_length_mismatch_is_rejected(self):
        signature = sign(BODY, SECRET)
        assert verify_webhook_signature(BODY, signature[:-4], SECRET) is False

    def test_parsed_body_is_rejected(self):
        """WHAT: Passing an already-parsed dict instead of bytes fails.
        WHY: Guards against callers verifying after JSON parsing.
        """
        assert verify_webhook_signature(json.loads(BODY), sign(BODY, SECRET), SECRET) is False
