"""Commitment, nullifier and key-image derivation over the BN254 scalar field.

All three use Poseidon with a fixed arity per call-site:

    commitment = H3(recipient, amount, nonce)
    nullifier  = H2(commitment, secret)
    key image  = H2(secret, tag("key_image"))

Arity and input order are shared with the external circuits. Changing them
does not break proof construction, only verification.
"""

from __future__ import annotations

import secrets
import threading
from functools import lru_cache

import poseidon

from .errors import InvalidAmountError, InvalidFieldElementError

FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617
FIELD_BYTES = 32
MAX_AMOUNT = 2**64 - 1

KEY_IMAGE_TAG = "key_image"

# poseidon.Poseidon keeps its permutation state on the instance.
_hash_lock = threading.Lock()


# ── Field encoding ───────────────────────────────────────────────────────────


def to_field(value: int | bytes | str) -> int:
    """Reduce an integer, byte string or identity label into the field.

    Byte strings are read big-endian. Text labels are encoded as the
    big-endian integer of their UTF-8 bytes.
    """
    if isinstance(value, bool):
        raise InvalidFieldElementError("booleans are not field elements")
    if isinstance(value, int):
        if value < 0:
            raise InvalidFieldElementError("field elements must be non-negative")
        return value % FIELD_MODULUS
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big") % FIELD_MODULUS
    raise InvalidFieldElementError(f"cannot encode {type(value).__name__} as a field element")


def field_to_hex(value: int) -> str:
    """Render a field element as a 64-char big-endian hex string."""
    return format(value % FIELD_MODULUS, "064x")


def field_from_hex(text: str) -> int:
    """Parse a hex string (optionally 0x-prefixed) as a canonical field element."""
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        value = int(text, 16)
    except ValueError as exc:
        raise InvalidFieldElementError(f"not a hex field element: {text[:16]!r}") from exc
    if value >= FIELD_MODULUS:
        raise InvalidFieldElementError("hex value is not a canonical field element")
    return value


def field_to_bytes(value: int) -> bytes:
    """Encode a field element as 32 big-endian bytes, as instruction payloads expect."""
    return (value % FIELD_MODULUS).to_bytes(FIELD_BYTES, "big")


def field_from_bytes(data: bytes) -> int:
    if len(data) != FIELD_BYTES:
        raise InvalidFieldElementError(f"expected {FIELD_BYTES} bytes, got {len(data)}")
    value = int.from_bytes(data, "big")
    if value >= FIELD_MODULUS:
        raise InvalidFieldElementError("bytes are not a canonical field element")
    return value


def random_field_element() -> int:
    return secrets.randbelow(FIELD_MODULUS)


def random_secret() -> bytes:
    """Draw 32 random bytes that reduce to a non-zero field element."""
    while True:
        candidate = secrets.token_bytes(FIELD_BYTES)
        if to_field(candidate):
            return candidate


# ── Poseidon ─────────────────────────────────────────────────────────────────


@lru_cache(maxsize=None)
def _hasher(arity: int) -> poseidon.Poseidon:
    return poseidon.Poseidon(
        p=FIELD_MODULUS,
        security_level=128,
        alpha=5,
        input_rate=arity,
        t=arity + 1,
    )


def poseidon_hash(*inputs: int) -> int:
    """Poseidon over BN254 with width ``len(inputs) + 1``."""
    if not inputs:
        raise ValueError("poseidon_hash needs at least one input")
    elements = [to_field(i) for i in inputs]
    h = _hasher(len(elements))
    with _hash_lock:
        digest = h.run_hash(elements)
    return int(digest) % FIELD_MODULUS


def hash_pair(left: int, right: int) -> int:
    """Two-to-one compression used by the Merkle accumulator."""
    return poseidon_hash(left, right)


# ── Scheme ───────────────────────────────────────────────────────────────────


def commitment(recipient: int | bytes | str, amount: int, nonce: bytes) -> int:
    """Commit to (recipient, amount, nonce).

    Callers supply a fresh random nonce per note so that repeated
    (recipient, amount) pairs stay unlinkable.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 <= amount <= MAX_AMOUNT:
        raise InvalidAmountError(f"amount must be a u64, got {amount!r}")
    return poseidon_hash(to_field(recipient), amount, to_field(nonce))


def nullifier(commitment_value: int, secret: bytes) -> int:
    return poseidon_hash(commitment_value, to_field(secret))


def key_image(secret: bytes) -> int:
    """Spend tag for ring transfers; same non-reuse rule as a nullifier."""
    return poseidon_hash(to_field(secret), to_field(KEY_IMAGE_TAG))
