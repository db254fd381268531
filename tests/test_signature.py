"""Tests for push notification signatures."""

import pytest

from feedsync.signature import (
    InvalidSignature,
    UnsupportedAlgorithm,
    generate_secret,
    parse_signature_header,
    sign,
    verify_signature,
)

SECRET = "0f" * 32
BODY = b"<rss><channel><title>Signed</title></channel></rss>"


def _flip(data: bytes, index: int) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


def test_generate_secret_is_256_bit_hex():
    secret = generate_secret()
    assert len(secret) == 64
    int(secret, 16)
    assert generate_secret() != secret


def test_valid_signature_accepted():
    verify_signature(BODY, f"sha256={sign(BODY, SECRET)}", SECRET)


def test_wrong_secret_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, f"sha256={sign(BODY, SECRET)}", "other")


@pytest.mark.parametrize("index", [0, len(BODY) // 2, len(BODY) - 1])
def test_body_mutation_rejected(index):
    header = f"sha256={sign(BODY, SECRET)}"
    with pytest.raises(InvalidSignature):
        verify_signature(_flip(BODY, index), header, SECRET)


@pytest.mark.parametrize("index", [0, 31, 63])
def test_digest_mutation_rejected(index):
    digest = sign(BODY, SECRET)
    mutated = digest[:index] + ("0" if digest[index] != "0" else "1") + digest[index + 1:]
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, f"sha256={mutated}", SECRET)


def test_truncated_digest_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, f"sha256={sign(BODY, SECRET)[:-2]}", SECRET)


def test_unsupported_algorithm():
    with pytest.raises(UnsupportedAlgorithm):
        verify_signature(BODY, "sha1=abcdef", SECRET)


def test_malformed_header():
    with pytest.raises(InvalidSignature):
        parse_signature_header("sha256")


def test_parse_header():
    assert parse_signature_header("sha256=abc") == ("sha256", "abc")


def test_uppercase_digest_accepted():
    verify_signature(BODY, f"sha256={sign(BODY, SECRET).upper()}", SECRET)


@pytest.mark.parametrize("digest", ["zz" * 32, "abc", "0f0"])
def test_non_hex_digest_rejected(digest):
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, f"sha256={digest}", SECRET)
