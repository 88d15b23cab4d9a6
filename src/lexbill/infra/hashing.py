"""HMAC helpers for gateway webhook signatures.

Security:
- Signatures are compared in constant time.
- Secret key required from environment.
- Raw bodies and signature values are never logged.
"""

import hashlib
import hmac
import os

_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}


def get_webhook_secret(env_var: str) -> bytes:
    """Get HMAC secret for webhook verification.

    Raises:
        RuntimeError: If the variable is not configured.
    """
    secret = os.environ.get(env_var)
    if not secret:
        raise RuntimeError(f"{env_var} not configured")
    return secret.encode()


def sign_payload(secret: bytes, payload: bytes, algorithm: str = "sha256") -> str:
    """Return hex HMAC digest of payload."""
    digestmod = _ALGORITHMS[algorithm]
    return hmac.new(secret, payload, digestmod).hexdigest()


def verify_signature(secret: bytes, payload: bytes, header_value: str | None) -> bool:
    """Verify an "algo=hexdigest" signature header (e.g. X-Hub-Signature).

    A bare hex digest is treated as sha256.

    Args:
        secret: Shared webhook secret.
        payload: Raw request body bytes.
        header_value: Signature header value.

    Returns:
        True if the signature matches, False otherwise.
    """
    if not header_value:
        return False

    algorithm, sep, digest = header_value.strip().partition("=")
    if not sep:
        algorithm, digest = "sha256", algorithm

    algorithm = algorithm.lower()
    if algorithm not in _ALGORITHMS or not digest:
        return False

    expected = sign_payload(secret, payload, algorithm)
    return hmac.compare_digest(expected, digest.lower())
