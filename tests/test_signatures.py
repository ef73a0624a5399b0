"""Tests for webhook signature verification."""

import hashlib
import hmac
from unittest import TestCase

from guest_access.api.signatures import sign_payload, verify_signature

SECRET = "webhook-secret"
BODY = b'{"event":"reservation.created"}'


class TestVerifySignature(TestCase):
    def test_valid_signature(self):
        signature = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        self.assertEqual(sign_payload(BODY, SECRET), signature)
        self.assertTrue(verify_signature(BODY, signature, SECRET).valid)

    def test_prefixed_and_uppercase_signatures(self):
        signature = sign_payload(BODY, SECRET)
        self.assertTrue(verify_signature(BODY, f"sha256={signature}", SECRET).valid)
        self.assertTrue(verify_signature(BODY, signature.upper(), SECRET).valid)

    def test_tampered_body_is_rejected(self):
        signature = sign_payload(BODY, SECRET)
        check = verify_signature(BODY + b" ", signature, SECRET)
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "Signature mismatch")

    def test_missing_signature(self):
        check = verify_signature(BODY, None, SECRET)
        self.assertFalse(check.valid)
        self.assertIn("X-Webhook-Signature", check.reason)

    def test_missing_secret(self):
        check = verify_signature(BODY, sign_payload(BODY, SECRET), "")
        self.assertFalse(check.valid)

    def test_non_ascii_signature_is_rejected(self):
        self.assertFalse(verify_signature(BODY, "ünïcode", SECRET).valid)
