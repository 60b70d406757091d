"""Tests for HMAC-SHA256 webhook signature verification.

Tests cover:
- Signature computation for GitHub (prefixed) and Linear (bare hex) headers
- Verification against the exact raw body
- Rejection of missing, malformed and mismatched signatures
"""

import hashlib
import hmac

import pytest

from hookrelay.services.signatures import (
    GITHUB_SIGNATURE,
    LINEAR_SIGNATURE,
    SignatureScheme,
    compute_signature,
    verify_signature,
)

SECRET = "It's a Secret to Everybody"
BODY = b"Hello, World!"
# Published example from GitHub's webhook validation guide
GITHUB_EXAMPLE = "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"


class TestComputeSignature:
    """Tests for compute_signature."""

    def test_github_example_vector(self):
        """Test the documented GitHub example digest."""
        assert compute_signature(BODY, SECRET, GITHUB_SIGNATURE) == GITHUB_EXAMPLE

    def test_linear_signature_is_bare_hex(self):
        """Test Linear signatures carry no prefix."""
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert compute_signature(BODY, SECRET, LINEAR_SIGNATURE) == expected

    def test_str_body_encoded_as_utf8(self):
        """Test str bodies sign the same as their UTF-8 bytes."""
        body = '{"title": "café"}'
        assert compute_signature(body, SECRET) == compute_signature(body.encode("utf-8"), SECRET)


class TestVerifySignature:
    """Tests for verify_signature."""

    def test_valid_github_signature(self):
        assert verify_signature(BODY, GITHUB_EXAMPLE, SECRET, GITHUB_SIGNATURE) is True

    def test_valid_linear_signature(self):
        header = compute_signature(BODY, SECRET, LINEAR_SIGNATURE)
        assert verify_signature(BODY, header, SECRET, LINEAR_SIGNATURE) is True

    def test_uppercase_hex_accepted(self):
        """Test hex digits are compared case-insensitively."""
        header = "sha256=" + GITHUB_EXAMPLE.removeprefix("sha256=").upper()
        assert verify_signature(BODY, header, SECRET) is True

    def test_wrong_secret_rejected(self):
        assert verify_signature(BODY, GITHUB_EXAMPLE, "other-secret") is False

    def test_modified_body_rejected(self):
        """Test any change to the raw bytes invalidates the signature."""
        assert verify_signature(b"Hello, World! ", GITHUB_EXAMPLE, SECRET) is False

    def test_reserialized_json_rejected(self):
        """Test re-encoding the same JSON with different whitespace fails."""
        original = b'{"a":1,"b":2}'
        header = compute_signature(original, SECRET)
        assert verify_signature(b'{"a": 1, "b": 2}', header, SECRET) is False

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            GITHUB_EXAMPLE.removeprefix("sha256="),
            "sha1=" + GITHUB_EXAMPLE.removeprefix("sha256="),
            "sha256=",
            "sha256=not-hex",
            "sha256=" + "z" * 64,
            GITHUB_EXAMPLE[:-2],
        ],
    )
    def test_malformed_github_header_rejected(self, header):
        """Test malformed headers verify as False instead of raising."""
        assert verify_signature(BODY, header, SECRET, GITHUB_SIGNATURE) is False

    def test_github_prefixed_header_rejected_for_linear(self):
        """Test Linear expects bare hex, not the GitHub format."""
        header = compute_signature(BODY, SECRET, GITHUB_SIGNATURE)
        assert verify_signature(BODY, header, SECRET, LINEAR_SIGNATURE) is False

    @pytest.mark.parametrize("secret", [None, ""])
    def test_missing_secret_rejected(self, secret):
        assert verify_signature(BODY, GITHUB_EXAMPLE, secret) is False


class TestSignatureScheme:
    """Tests for the provider scheme constants."""

    def test_provider_headers(self):
        assert GITHUB_SIGNATURE.header == "X-Hub-Signature-256"
        assert GITHUB_SIGNATURE.prefix == "sha256="
        assert LINEAR_SIGNATURE.header == "Linear-Signature"
        assert LINEAR_SIGNATURE.prefix == ""

    def test_schemes_are_immutable(self):
        with pytest.raises(AttributeError):
            GITHUB_SIGNATURE.prefix = "sha1="  # type: ignore[misc]

    def test_custom_scheme(self):
        scheme = SignatureScheme(provider="acme", header="X-Acme-Signature", prefix="v1=")
        header = compute_signature(BODY, SECRET, scheme)
        assert header.startswith("v1=")
        assert verify_signature(BODY, header, SECRET, scheme) is True
