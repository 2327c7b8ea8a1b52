"""Binary instruction payloads consumed by the on-chain pool program.

Layouts are keyed by a one-byte discriminant. Integers are little-endian,
``Vec<T>`` is a u32 length followed by the items, ``Option<T>`` is a 0/1
byte followed by the value when present. These bytes must match the
deployed program exactly.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from .errors import InvalidInstructionError

HASH_SIZE = 32


class InstructionKind(IntEnum):
    INITIALIZE_POOL = 0
    DEPOSIT = 1
    WITHDRAW = 2
    PRIVATE_TRANSFER = 3
    VERIFY_BALANCE = 4


# ── Writer / reader ──────────────────────────────────────────────────────────


class _Writer:
    def __init__(self, kind: InstructionKind) -> None:
        self._parts: list[bytes] = [bytes([kind])]

    def _pack(self, fmt: str, value: int) -> _Writer:
        try:
            self._parts.append(struct.pack(fmt, value))
        except struct.error as exc:
            raise InvalidInstructionError(f"value {value!r} does not fit {fmt}") from exc
        return self

    def u8(self, value: int) -> _Writer:
        return self._pack("<B", value)

    def u64(self, value: int) -> _Writer:
        return self._pack("<Q", value)

    def hash32(self, value: bytes) -> _Writer:
        if len(value) != HASH_SIZE:
            raise InvalidInstructionError(f"expected a {HASH_SIZE}-byte value, got {len(value)}")
        self._parts.append(bytes(value))
        return self

    def vec(self, value: bytes) -> _Writer:
        self._parts.append(struct.pack("<I", len(value)))
        self._parts.append(bytes(value))
        return self

    def vec_hash32(self, values: list[bytes]) -> _Writer:
        self._parts.append(struct.pack("<I", len(values)))
        for item in values:
            self.hash32(item)
        return self

    def option_hash32(self, value: bytes | None) -> _Writer:
        if value is None:
            self._parts.append(b"\x00")
        else:
            self._parts.append(b"\x01")
            self.hash32(value)
        return self

    def finish(self) -> bytes:
        return b"".join(self._parts)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._pos = 0

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise InvalidInstructionError(
                f"instruction truncated: needed {size} bytes at offset {self._pos}"
            )
        chunk = self._data[self._pos:end].tobytes()
        self._pos = end
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def hash32(self) -> bytes:
        return self._take(HASH_SIZE)

    def vec(self) -> bytes:
        return self._take(self.u32())

    def vec_hash32(self) -> list[bytes]:
        count = self.u32()
        if count * HASH_SIZE > len(self._data) - self._pos:
            raise InvalidInstructionError(f"vector of {count} hashes exceeds the payload")
        return [self.hash32() for _ in range(count)]

    def option_hash32(self) -> bytes | None:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return self.hash32()
        raise InvalidInstructionError(f"invalid option tag {tag}")

    def done(self) -> None:
        if self._pos != len(self._data):
            raise InvalidInstructionError(
                f"{len(self._data) - self._pos} trailing bytes after instruction"
            )


# ── Instructions ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class InitializePool:
    depth: int
    denomination: int

    kind = InstructionKind.INITIALIZE_POOL

    def encode(self) -> bytes:
        return _Writer(self.kind).u8(self.depth).u64(self.denomination).finish()

    @classmethod
    def _read(cls, r: _Reader) -> InitializePool:
        return cls(depth=r.u8(), denomination=r.u64())


@dataclass(frozen=True)
class Deposit:
    commitment: bytes
    amount: int

    kind = InstructionKind.DEPOSIT

    def encode(self) -> bytes:
        return _Writer(self.kind).hash32(self.commitment).u64(self.amount).finish()

    @classmethod
    def _read(cls, r: _Reader) -> Deposit:
        return cls(commitment=r.hash32(), amount=r.u64())


@dataclass(frozen=True)
class Withdraw:
    proof: bytes
    root: bytes
    nullifier: bytes
    new_commitment: bytes | None
    recipient: bytes
    amount: int

    kind = InstructionKind.WITHDRAW

    def encode(self) -> bytes:
        return (
            _Writer(self.kind)
            .vec(self.proof)
            .hash32(self.root)
            .hash32(self.nullifier)
            .option_hash32(self.new_commitment)
            .hash32(self.recipient)
            .u64(self.amount)
            .finish()
        )

    @classmethod
    def _read(cls, r: _Reader) -> Withdraw:
        return cls(
            proof=r.vec(),
            root=r.hash32(),
            nullifier=r.hash32(),
            new_commitment=r.option_hash32(),
            recipient=r.hash32(),
            amount=r.u64(),
        )


@dataclass(frozen=True)
class PrivateTransfer:
    ring_signature: bytes
    key_image: bytes
    ring_members: list[bytes]
    new_commitment: bytes
    encrypted_amount: bytes

    kind = InstructionKind.PRIVATE_TRANSFER

    def encode(self) -> bytes:
        return (
            _Writer(self.kind)
            .vec(self.ring_signature)
            .hash32(self.key_image)
            .vec_hash32(self.ring_members)
            .hash32(self.new_commitment)
            .vec(self.encrypted_amount)
            .finish()
        )

    @classmethod
    def _read(cls, r: _Reader) -> PrivateTransfer:
        return cls(
            ring_signature=r.vec(),
            key_image=r.hash32(),
            ring_members=r.vec_hash32(),
            new_commitment=r.hash32(),
            encrypted_amount=r.vec(),
        )


@dataclass(frozen=True)
class VerifyBalance:
    proof: bytes
    min_balance: int
    balance_commitment: bytes

    kind = InstructionKind.VERIFY_BALANCE

    def encode(self) -> bytes:
        return (
            _Writer(self.kind)
            .vec(self.proof)
            .u64(self.min_balance)
            .hash32(self.balance_commitment)
            .finish()
        )

    @classmethod
    def _read(cls, r: _Reader) -> VerifyBalance:
        return cls(proof=r.vec(), min_balance=r.u64(), balance_commitment=r.hash32())


Instruction = InitializePool | Deposit | Withdraw | PrivateTransfer | VerifyBalance

_DECODERS = {
    InstructionKind.INITIALIZE_POOL: InitializePool,
    InstructionKind.DEPOSIT: Deposit,
    InstructionKind.WITHDRAW: Withdraw,
    InstructionKind.PRIVATE_TRANSFER: PrivateTransfer,
    InstructionKind.VERIFY_BALANCE: VerifyBalance,
}


def decode_instruction(data: bytes) -> Instruction:
    """Parse a payload, rejecting unknown discriminants and trailing bytes."""
    if not data:
        raise InvalidInstructionError("empty instruction payload")
    try:
        kind = InstructionKind(data[0])
    except ValueError as exc:
        raise InvalidInstructionError(f"unknown instruction discriminant {data[0]}") from exc
    reader = _Reader(data[1:])
    instruction = _DECODERS[kind]._read(reader)
    reader.done()
    return instruction
