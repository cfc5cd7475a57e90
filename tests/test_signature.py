"""Tests for webhook signature verification."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from braid.signature import compute_signature, constant_time_compare, verify_signature

SECRET = "It's a Secret to Everybody"
PAYLOAD = b"Hello, World!"


class TestComputeSignature:
    def test_matches_hmac_sha256(self) -> None:
        expected = hmac.new(SECRET.encode(), PAYLOAD, hashlib.sha256).hexdigest()
        assert compute_signature(PAYLOAD, SECRET) == f"sha256={expected}"

    def test_known_vector(self) -> None:
        # Example from GitHub's webhook validation docs.
        assert (
            compute_signature(PAYLOAD, SECRET)
            == "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"
        )


class TestVerifySignature:
    def test_valid(self) -> None:
        assert verify_signature(PAYLOAD, compute_signature(PAYLOAD, SECRET), SECRET)

    def test_wrong_secret(self) -> None:
        assert not verify_signature(PAYLOAD, compute_signature(PAYLOAD, "other"), SECRET)

    def test_tampered_payload(self) -> None:
        assert not verify_signature(PAYLOAD + b" ", compute_signature(PAYLOAD, SECRET), SECRET)

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "757107ea0eb2509fc211221cce984b8a"])
    def test_missing_or_malformed_header(self, header: str | None) -> None:
        assert not verify_signature(PAYLOAD, header, SECRET)

    def test_empty_secret_never_verifies(self) -> None:
        assert not verify_signature(PAYLOAD, compute_signature(PAYLOAD, ""), "")

    def test_truncated_digest(self) -> None:
        assert not verify_signature(PAYLOAD, compute_signature(PAYLOAD, SECRET)[:-2], SECRET)

    def test_whitespace_sensitive(self) -> None:
        reserialized = b'{"a": 1}'
        signed = compute_signature(b'{"a":1}', SECRET)
        assert not verify_signature(reserialized, signed, SECRET)


class TestConstantTimeCompare:
    def test_equal(self) -> None:
        assert constant_time_compare("abcdef", "abcdef")

    def test_length_mismatch(self) -> None:
        assert not constant_time_compare("abc", "abcd")

    @pytest.mark.parametrize("position", [0, 3, 5])
    def test_mismatch_at_any_position(self, position: int) -> None:
        a = "abcdef"
        b = a[:position] + "z" + a[position + 1 :]
        assert not constant_time_compare(a, b)

    def test_empty_strings(self) -> None:
        assert constant_time_compare("", "")
