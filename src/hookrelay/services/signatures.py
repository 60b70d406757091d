"""HMAC-SHA256 webhook signature verification.

Providers sign the raw request body with a shared secret and send the digest
in a header. The digest must be computed over the exact bytes received:
parsing and re-serializing the JSON can reorder keys or change whitespace,
which produces a different digest than the one the provider signed.

Header formats differ per provider and are captured by SignatureScheme:
- GitHub: X-Hub-Signature-256: sha256=<hex>
- Linear: Linear-Signature: <hex>

Usage:
    from hookrelay.services.signatures import GITHUB_SIGNATURE, verify_signature

    raw = await request.body()
    ok = verify_signature(raw, request.headers.get(GITHUB_SIGNATURE.header), secret)
"""

from __future__ import annotations

import hashlib
import hmac
import string
from dataclasses import dataclass

_HEX_DIGITS = frozenset(string.hexdigits)
_DIGEST_HEX_LENGTH = hashlib.sha256().digest_size * 2


@dataclass(frozen=True, slots=True)
class SignatureScheme:
    """Expected signature header format for one provider.

    Attributes:
        provider: Provider identifier (e.g. "github").
        header: HTTP header carrying the signature.
        prefix: Literal tag preceding the hex digest ("" for bare hex).
    """

    provider: str
    header: str
    prefix: str = ""


GITHUB_SIGNATURE = SignatureScheme(provider="github", header="X-Hub-Signature-256", prefix="sha256=")
LINEAR_SIGNATURE = SignatureScheme(provider="linear", header="Linear-Signature")


def _to_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(
    raw_body: bytes | str,
    secret: str,
    scheme: SignatureScheme = GITHUB_SIGNATURE,
) -> str:
    """Compute the header value a provider would send for this body.

    Args:
        raw_body: Exact request body bytes (str is encoded as UTF-8).
        secret: Shared webhook secret.
        scheme: Provider header format.

    Returns:
        The signature header value, including the scheme prefix.
    """
    digest = hmac.new(_to_bytes(secret), _to_bytes(raw_body), hashlib.sha256).hexdigest()
    return f"{scheme.prefix}{digest}"


def verify_signature(
    raw_body: bytes | str,
    signature_header: str | None,
    secret: str | None,
    scheme: SignatureScheme = GITHUB_SIGNATURE,
) -> bool:
    """Check a webhook signature in constant time.

    Never raises: a missing header or secret, a missing prefix, or a
    malformed digest all verify as False.

    Args:
        raw_body: Exact request body bytes as received.
        signature_header: Value of the provider's signature header.
        secret: Shared webhook secret.
        scheme: Provider header format.

    Returns:
        True only if the header matches the expected signature.
    """
    if not signature_header or not secret:
        return False

    if scheme.prefix:
        if not signature_header.startswith(scheme.prefix):
            return False
        provided = signature_header[len(scheme.prefix) :]
    else:
        provided = signature_header

    provided = provided.strip().lower()
    if len(provided) != _DIGEST_HEX_LENGTH or not _HEX_DIGITS.issuperset(provided):
        return False

    expected = compute_signature(raw_body, secret, SignatureScheme(scheme.provider, scheme.header))
    return hmac.compare_digest(provided.encode("ascii"), expected.encode("ascii"))
