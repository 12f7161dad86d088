"""
Unit tests for request signing and timestamp freshness.
"""

import pytest

from salesguard.errors import IntegrityError, SignatureInvalid, TimestampExpired
from salesguard.services.request_signer import (
    MAX_TIMESTAMP_SKEW_MS, SIGNATURE_HEADER, TIMESTAMP_HEADER,
    RequestSigner, canonical_message, is_timestamp_valid, now_ms, sign, verify,
)

SECRET = "unit-test-secret-0123456789"
PAYLOAD = {"companyName": "Acme", "companyDomain": "acme.com", "tags": ["a", "b"]}
TIMESTAMP = 1_700_000_000_000


def _flip_bit(signature: str, position: int) -> str:
    """Flip one bit of the hex-encoded signature"""
    raw = bytearray(bytes.fromhex(signature))
    raw[position // 8] ^= 1 << (position % 8)
    return raw.hex()


class TestSigning:
    """Test signature computation."""

    def test_sign_is_deterministic(self):
        """Identical inputs produce identical signatures."""
        assert sign(PAYLOAD, TIMESTAMP, SECRET) == sign(PAYLOAD, TIMESTAMP, SECRET)

    def test_signature_is_hex_sha256(self):
        """Signature is a 64 character hex digest."""
        signature = sign(PAYLOAD, TIMESTAMP, SECRET)
        assert len(signature) == 64
        int(signature, 16)

    def test_key_order_does_not_matter(self):
        """Logically equal payloads sign identically."""
        reordered = {"tags": ["a", "b"], "companyDomain": "acme.com", "companyName": "Acme"}
        assert sign(PAYLOAD, TIMESTAMP, SECRET) == sign(reordered, TIMESTAMP, SECRET)

    def test_canonical_message_is_compact_and_sorted(self):
        """Canonical encoding sorts keys and omits whitespace."""
        message = canonical_message({"b": 1, "a": "é"}, 5)
        assert message == '{"payload":{"a":"é","b":1},"timestamp":5}'.encode('utf-8')

    def test_payload_change_changes_signature(self):
        """A one character change in the payload changes the signature."""
        changed = dict(PAYLOAD, companyName="Acmf")
        assert sign(PAYLOAD, TIMESTAMP, SECRET) != sign(changed, TIMESTAMP, SECRET)

    def test_timestamp_change_changes_signature(self):
        """A one millisecond change in the timestamp changes the signature."""
        assert sign(PAYLOAD, TIMESTAMP, SECRET) != sign(PAYLOAD, TIMESTAMP + 1, SECRET)

    def test_secret_change_changes_signature(self):
        """A one character change in the secret changes the signature."""
        assert sign(PAYLOAD, TIMESTAMP, SECRET) != sign(PAYLOAD, TIMESTAMP, SECRET[:-1] + "X")


class TestVerification:
    """Test signature verification."""

    def test_valid_signature_verifies(self):
        """A freshly computed signature verifies."""
        signature = sign(PAYLOAD, TIMESTAMP, SECRET)
        assert verify(PAYLOAD, TIMESTAMP, signature, SECRET) is True

    def test_every_single_bit_mutation_is_rejected(self):
        """Flipping any one bit of a valid signature makes it invalid."""
        signature = sign(PAYLOAD, TIMESTAMP, SECRET)
        for position in range(256):
            assert verify(PAYLOAD, TIMESTAMP, _flip_bit(signature, position), SECRET) is False

    def test_wrong_secret_is_rejected(self):
        """A signature made with another secret is rejected."""
        signature = sign(PAYLOAD, TIMESTAMP, "another-secret-0123456789")
        assert verify(PAYLOAD, TIMESTAMP, signature, SECRET) is False

    @pytest.mark.parametrize("signature", [None, "", "not-hex", "é" * 64, 12345])
    def test_malformed_signatures_never_raise(self, signature):
        """Malformed signatures are rejected without raising."""
        assert verify(PAYLOAD, TIMESTAMP, signature, SECRET) is False

    def test_unserializable_payload_is_rejected(self):
        """Payloads that cannot be encoded are rejected without raising."""
        assert verify({"value": float("nan")}, TIMESTAMP, "00" * 32, SECRET) is False


class TestTimestampWindow:
    """Test timestamp freshness checks."""

    def test_now_is_valid(self):
        now = now_ms()
        assert is_timestamp_valid(now, now=now)

    def test_four_minutes_old_is_valid(self):
        now = now_ms()
        assert is_timestamp_valid(now - 4 * 60 * 1000, now=now)

    def test_six_minutes_old_is_invalid(self):
        now = now_ms()
        assert not is_timestamp_valid(now - 6 * 60 * 1000, now=now)

    def test_six_minutes_ahead_is_invalid(self):
        now = now_ms()
        assert not is_timestamp_valid(now + 6 * 60 * 1000, now=now)

    def test_window_boundary_is_exclusive(self):
        """A timestamp exactly at the maximum skew is rejected."""
        now = now_ms()
        assert not is_timestamp_valid(now - MAX_TIMESTAMP_SKEW_MS, now=now)
        assert is_timestamp_valid(now - MAX_TIMESTAMP_SKEW_MS + 1, now=now)

    @pytest.mark.parametrize("timestamp", [None, "", "soon", True, [1]])
    def test_non_numeric_timestamps_are_invalid(self, timestamp):
        assert not is_timestamp_valid(timestamp)

    def test_numeric_string_is_accepted(self):
        """Header values arrive as strings."""
        now = now_ms()
        assert is_timestamp_valid(str(now), now=now)


class TestRequestSigner:
    """Test the RequestSigner service."""

    def test_signed_headers_round_trip(self):
        """Headers produced for a payload verify against the same payload."""
        signer = RequestSigner(secret_key=SECRET)
        headers = signer.signed_headers(PAYLOAD)

        signer.verify_request(PAYLOAD, headers[TIMESTAMP_HEADER], headers[SIGNATURE_HEADER])

    def test_expired_timestamp_raises(self):
        signer = RequestSigner(secret_key=SECRET)
        stale = now_ms() - 10 * 60 * 1000

        with pytest.raises(TimestampExpired):
            signer.verify_request(PAYLOAD, stale, signer.sign(PAYLOAD, stale))

    def test_bad_signature_raises(self):
        signer = RequestSigner(secret_key=SECRET)
        ts = now_ms()

        with pytest.raises(SignatureInvalid):
            signer.verify_request(PAYLOAD, ts, "0" * 64)

    def test_integrity_failures_share_one_public_message(self):
        """Callers cannot tell which integrity check failed."""
        assert SignatureInvalid().public_detail == TimestampExpired().public_detail
        assert SignatureInvalid("signature mismatch").public_detail == IntegrityError.public_message
        assert SignatureInvalid.status_code == TimestampExpired.status_code == 401

    def test_custom_skew(self):
        signer = RequestSigner(secret_key=SECRET, max_skew_ms=1000)
        now = now_ms()

        assert signer.is_timestamp_valid(now - 500, now=now)
        assert not signer.is_timestamp_valid(now - 1500, now=now)
