"""Shared enums and types used across the engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from .commitment import field_from_hex

if TYPE_CHECKING:
    from .signer import Signer, UnsignedTransaction


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class NoteState(str, enum.Enum):
    """Lifecycle position of a note inside the ledger."""

    PENDING = "pending"  # created, issuing transaction not yet confirmed
    ACTIVE = "active"
    RESERVED = "reserved"  # a spend ticket is outstanding
    SPENT = "spent"


class CircuitName(str, enum.Enum):
    TRANSFER = "transfer"
    BALANCE = "balance"
    RING_SIGNATURE = "ring_signature"


# ── Notes ────────────────────────────────────────────────────────────────────


class Note(BaseModel):
    """A shielded note.

    Field elements are stored as 64-char hex. ``secret`` and ``nonce`` are
    excluded from ``repr`` so they do not end up in tracebacks or logs.
    """

    commitment: str
    nullifier: str
    amount: int = Field(ge=0)
    secret: str = Field(repr=False)
    nonce: str = Field(repr=False)
    owner: str
    spent: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    leaf_index: int | None = None
    confirmation_ref: str | None = None
    spent_ref: str | None = None
    spent_at: datetime | None = None
    parent_commitment: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.confirmation_ref is not None and self.leaf_index is not None

    @property
    def commitment_value(self) -> int:
        return field_from_hex(self.commitment)

    @property
    def nullifier_value(self) -> int:
        return field_from_hex(self.nullifier)

    @property
    def secret_bytes(self) -> bytes:
        return bytes.fromhex(self.secret)

    @property
    def nonce_bytes(self) -> bytes:
        return bytes.fromhex(self.nonce)


@dataclass(frozen=True)
class SpendTicket:
    """Exclusive reservation of one note for a spend in progress."""

    ticket_id: str
    commitment: str
    nullifier: str
    owner: str
    amount: int
    issued_at: float = field(compare=False)


# ── Proofs ───────────────────────────────────────────────────────────────────


class ProofResult(BaseModel):
    """Opaque proof bytes plus the public signals the prover committed to."""

    circuit: CircuitName
    proof: bytes
    public_signals: list[str]
    raw: dict[str, Any] | None = Field(default=None, repr=False)


# ── Persistence ──────────────────────────────────────────────────────────────


class NotePersistence(Protocol):
    """Where the ledger writes its full note set after every mutation."""

    def save_notes(self, notes: list[Note]) -> None: ...

    def load_notes(self) -> list[Note]: ...


class LedgerClient(Protocol):
    """Host-ledger access used by the relayer and the pool flows."""

    async def get_balance(self, account: bytes) -> int: ...

    async def submit(self, tx: UnsignedTransaction, signer: Signer) -> str:
        """Sign, send and wait for confirmation. Returns the confirmation reference."""
        ...
