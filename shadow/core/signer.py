"""Transaction signing.

A :class:`Signer` exposes exactly ``public_key()`` and
``sign_transaction(tx)``. :class:`LocalKeypairSigner` backs it with an
Ed25519 key held in memory; hardware or remote signers implement the same
protocol.
"""

from __future__ import annotations

import json
import logging
import struct
from pathlib import Path
from typing import Protocol, runtime_checkable

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PUBKEY_SIZE = 32
MESSAGE_VERSION = 1


def encode_address(key: bytes) -> str:
    return base58.b58encode(key).decode("ascii")


def decode_address(address: str) -> bytes:
    try:
        raw = base58.b58decode(address)
    except ValueError as exc:
        raise ValueError(f"invalid base58 address {address!r}") from exc
    if len(raw) != PUBKEY_SIZE:
        raise ValueError(f"address must decode to {PUBKEY_SIZE} bytes, got {len(raw)}")
    return raw


# ── Transaction models ───────────────────────────────────────────────────────


class AccountMeta(BaseModel):
    pubkey: bytes
    is_signer: bool = False
    is_writable: bool = False


class UnsignedTransaction(BaseModel):
    """One program instruction plus the accounts it touches.

    ``data`` is forwarded verbatim; nothing in signing or submission
    rewrites it.
    """

    fee_payer: bytes
    program_id: bytes
    accounts: list[AccountMeta] = Field(default_factory=list)
    data: bytes
    recent_blockhash: str | None = None

    def with_blockhash(self, blockhash: str) -> UnsignedTransaction:
        return self.model_copy(update={"recent_blockhash": blockhash})

    def message_bytes(self) -> bytes:
        """Canonical byte encoding that signers sign over."""
        if self.recent_blockhash is None:
            raise ValueError("transaction has no recent blockhash")
        parts = [
            bytes([MESSAGE_VERSION]),
            decode_address(self.recent_blockhash),
            self.fee_payer,
            self.program_id,
            struct.pack("<B", len(self.accounts)),
        ]
        for meta in self.accounts:
            flags = (1 if meta.is_signer else 0) | (2 if meta.is_writable else 0)
            parts.append(meta.pubkey + bytes([flags]))
        parts.append(struct.pack("<I", len(self.data)))
        parts.append(self.data)
        return b"".join(parts)


class SignedTransaction(BaseModel):
    message: bytes
    signatures: list[bytes]

    @property
    def signature(self) -> str:
        """Base58 form of the fee payer's signature, used as the transaction id."""
        return encode_address(self.signatures[0]) if self.signatures else ""

    def serialize(self) -> bytes:
        return struct.pack("<B", len(self.signatures)) + b"".join(self.signatures) + self.message


# ── Signers ──────────────────────────────────────────────────────────────────


@runtime_checkable
class Signer(Protocol):
    def public_key(self) -> bytes: ...

    def sign_transaction(self, tx: UnsignedTransaction) -> SignedTransaction: ...


class LocalKeypairSigner:
    """Ed25519 signer over an in-memory private key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key
        self._public = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    def __repr__(self) -> str:
        return f"LocalKeypairSigner(address={self.address!r})"

    @classmethod
    def generate(cls) -> LocalKeypairSigner:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> LocalKeypairSigner:
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_file(cls, path: Path) -> LocalKeypairSigner:
        """Load a keypair file holding a JSON array of 64 ints (seed || pubkey)."""
        path = Path(path)
        try:
            raw = bytes(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as exc:
            raise ValueError(f"unreadable keypair file {path}: {exc}") from exc
        if len(raw) != 64:
            raise ValueError(f"keypair file {path} must hold 64 bytes, got {len(raw)}")
        signer = cls.from_seed(raw[:32])
        if signer.public_key() != raw[32:]:
            raise ValueError(f"keypair file {path} has a public key that does not match its seed")
        logger.info("Loaded signer %s from %s", signer.address, path)
        return signer

    @property
    def address(self) -> str:
        return encode_address(self._public)

    def public_key(self) -> bytes:
        return self._public

    def sign_message(self, message: bytes) -> bytes:
        return self._key.sign(message)

    def sign_transaction(self, tx: UnsignedTransaction) -> SignedTransaction:
        if tx.fee_payer != self._public:
            raise ValueError("transaction fee payer does not match this signer")
        message = tx.message_bytes()
        return SignedTransaction(message=message, signatures=[self._key.sign(message)])


def verify_signature(public_key: bytes, signature: bytes, message: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except InvalidSignature:
        return False
    return True
