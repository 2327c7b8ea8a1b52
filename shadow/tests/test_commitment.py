"""Tests for shadow.core.commitment — field encoding and the hash scheme."""

from __future__ import annotations

import pytest

from shadow.core.commitment import (
    FIELD_MODULUS,
    commitment,
    field_from_bytes,
    field_from_hex,
    field_to_bytes,
    field_to_hex,
    key_image,
    nullifier,
    poseidon_hash,
    random_secret,
    to_field,
)
from shadow.core.errors import InvalidAmountError, InvalidFieldElementError


class TestFieldEncoding:
    def test_label_is_big_endian_utf8(self):
        assert to_field("alice") == int.from_bytes(b"alice", "big")

    def test_bytes_reduced_into_field(self):
        assert to_field(b"\xff" * 32) == int.from_bytes(b"\xff" * 32, "big") % FIELD_MODULUS

    def test_int_reduced(self):
        assert to_field(FIELD_MODULUS + 5) == 5

    def test_negative_rejected(self):
        with pytest.raises(InvalidFieldElementError):
            to_field(-1)

    def test_hex_is_64_chars(self):
        assert field_to_hex(1) == "0" * 63 + "1"

    def test_hex_accepts_prefix(self):
        assert field_from_hex("0x" + field_to_hex(12345)) == 12345

    def test_non_canonical_hex_rejected(self):
        with pytest.raises(InvalidFieldElementError):
            field_from_hex(format(FIELD_MODULUS, "064x"))

    def test_bytes_are_32_big_endian(self):
        data = field_to_bytes(258)
        assert len(data) == 32
        assert data[-2:] == b"\x01\x02"
        assert field_from_bytes(data) == 258

    def test_wrong_byte_length_rejected(self):
        with pytest.raises(InvalidFieldElementError):
            field_from_bytes(b"\x00" * 31)

    def test_random_secret_is_nonzero_field_element(self):
        secret = random_secret()
        assert len(secret) == 32
        assert to_field(secret) != 0


class TestScheme:
    def test_commitment_deterministic(self):
        nonce = b"\x01" * 32
        assert commitment("alice", 100, nonce) == commitment("alice", 100, nonce)

    def test_fresh_nonce_unlinks_commitments(self):
        assert commitment("alice", 100, b"\x01" * 32) != commitment("alice", 100, b"\x02" * 32)

    def test_commitment_in_field(self):
        assert 0 <= commitment("bob", 5, b"\x03" * 32) < FIELD_MODULUS

    def test_amount_must_be_u64(self):
        with pytest.raises(InvalidAmountError):
            commitment("alice", 2**64, b"\x01" * 32)
        with pytest.raises(InvalidAmountError):
            commitment("alice", -1, b"\x01" * 32)

    def test_nullifier_stable(self):
        c = commitment("alice", 1, b"\x04" * 32)
        secret = b"\x05" * 32
        assert nullifier(c, secret) == nullifier(c, secret)

    def test_nullifier_distinct_for_distinct_pairs(self):
        c1 = commitment("alice", 1, b"\x04" * 32)
        c2 = commitment("alice", 1, b"\x06" * 32)
        secret = b"\x05" * 32
        assert nullifier(c1, secret) != nullifier(c2, secret)
        assert nullifier(c1, secret) != nullifier(c1, b"\x07" * 32)

    def test_key_image_differs_from_nullifier_domain(self):
        secret = b"\x09" * 32
        assert key_image(secret) == key_image(secret)
        assert key_image(secret) != key_image(b"\x0a" * 32)
        assert key_image(secret) != nullifier(to_field(secret), b"\x00" * 32)

    def test_arity_changes_digest(self):
        assert poseidon_hash(1, 2) != poseidon_hash(1, 2, 0)

    def test_input_order_matters(self):
        assert poseidon_hash(1, 2) != poseidon_hash(2, 1)
