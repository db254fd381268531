"""HMAC signatures for push notifications."""

import hashlib
import hmac
import secrets

SUPPORTED_ALGORITHM = "sha256"
SECRET_BYTES = 32


class SignatureError(Exception):
    """Raised when a push notification fails authentication."""


class UnsupportedAlgorithm(SignatureError):
    """The signature header names an algorithm other than sha256."""


class InvalidSignature(SignatureError):
    """The signature does not match the body."""


def generate_secret() -> str:
    """Return a fresh 256-bit hex-encoded subscription secret."""
    return secrets.token_hex(SECRET_BYTES)


def sign(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of `body` keyed with `secret`."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split an `algorithm=hexdigest` header.

    Raises:
        UnsupportedAlgorithm: If the algorithm is not sha256.
        InvalidSignature: If the header is malformed.
    """
    algorithm, sep, digest = header.strip().partition("=")
    if algorithm.lower() != SUPPORTED_ALGORITHM:
        raise UnsupportedAlgorithm(f"Unsupported signature algorithm: {algorithm!r}")
    if not sep or not digest:
        raise InvalidSignature("Malformed signature header")
    return algorithm.lower(), digest


def verify_signature(body: bytes, header: str, secret: str) -> None:
    """Check an `X-Hub-Signature` header against the raw request body.

    Raises:
        UnsupportedAlgorithm: If the algorithm is not sha256.
        InvalidSignature: If the digest does not match.
    """
    _, digest = parse_signature_header(header)
    try:
        provided = bytes.fromhex(digest)
    except ValueError:
        raise InvalidSignature("Signature is not a hex digest")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, provided):
        raise InvalidSignature("Signature does not match body")
