"""Proof orchestration: circuit-input contracts and prover submission.

Builds the named-signal inputs for the ``transfer``, ``balance`` and
``ring_signature`` circuits from ledger and accumulator state and hands
them to an external :class:`~shadow.integrations.prover.Prover`. Nothing
here mutates the ledger; callers commit or abort their spend ticket based
on the outcome.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, model_validator

from shadow.core import commitment as scheme
from shadow.core.commitment import MAX_AMOUNT, random_field_element, random_secret, to_field
from shadow.core.config import ShadowSettings
from shadow.core.errors import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidKeyImageError,
    InvalidRingSizeError,
    NoteNotConfirmedError,
    ProofError,
    ProofTimeoutError,
    StorageError,
)
from shadow.core.ledger import NoteLedger
from shadow.core.logging import fingerprint
from shadow.core.merkle import MerkleAccumulator
from shadow.core.types import CircuitName, Note, ProofResult
from shadow.integrations.prover import Prover

logger = logging.getLogger(__name__)


# ── Circuit layouts ──────────────────────────────────────────────────────────


class CircuitLayout(NamedTuple):
    public: tuple[str, ...]
    private: tuple[str, ...]


CIRCUIT_LAYOUTS: dict[CircuitName, CircuitLayout] = {
    CircuitName.TRANSFER: CircuitLayout(
        public=("root", "nullifier", "newCommitment"),
        private=(
            "amount",
            "privateKey",
            "recipientPublicKey",
            "nonce",
            "oldNonce",
            "pathElements",
            "pathIndices",
        ),
    ),
    CircuitName.BALANCE: CircuitLayout(
        public=("minBalance", "balanceCommitment"),
        private=("actualBalance", "balanceNonce", "privateKey"),
    ),
    CircuitName.RING_SIGNATURE: CircuitLayout(
        public=("keyImage", "ringMembers", "message"),
        private=("privateKey",),
    ),
}


def _signal(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_signal(v) for v in value]
    return str(int(value))


class CircuitInputs(BaseModel):
    """Named public and private signals for one circuit.

    Signal names must match the circuit's declared layout exactly.
    """

    circuit: CircuitName
    public: dict[str, Any]
    private: dict[str, Any] = Field(repr=False)

    @model_validator(mode="after")
    def _check_layout(self) -> CircuitInputs:
        layout = CIRCUIT_LAYOUTS[self.circuit]
        if tuple(self.public) != layout.public:
            raise ValueError(f"{self.circuit.value} public signals must be {layout.public}")
        if tuple(self.private) != layout.private:
            raise ValueError(f"{self.circuit.value} private signals must be {layout.private}")
        return self

    def signal_order(self) -> list[str]:
        layout = CIRCUIT_LAYOUTS[self.circuit]
        return [*layout.public, *layout.private]

    def to_prover_input(self) -> dict[str, Any]:
        """Decimal-string signals, public first, in declared order."""
        merged = {**self.public, **self.private}
        return {name: _signal(merged[name]) for name in self.signal_order()}


class TransferCircuitInputs(CircuitInputs):
    circuit: CircuitName = CircuitName.TRANSFER
    new_nonce: str = Field(default="", repr=False)

    @property
    def root(self) -> int:
        return self.public["root"]

    @property
    def nullifier(self) -> int:
        return self.public["nullifier"]

    @property
    def new_commitment(self) -> int:
        return self.public["newCommitment"]


class BalanceCircuitInputs(CircuitInputs):
    circuit: CircuitName = CircuitName.BALANCE

    @property
    def min_balance(self) -> int:
        return self.public["minBalance"]

    @property
    def balance_commitment(self) -> int:
        return self.public["balanceCommitment"]


class RingCircuitInputs(CircuitInputs):
    circuit: CircuitName = CircuitName.RING_SIGNATURE

    @property
    def key_image(self) -> int:
        return self.public["keyImage"]

    @property
    def ring_members(self) -> list[int]:
        return list(self.public["ringMembers"])


def message_to_field(message: bytes | int | str) -> int:
    """Bind an arbitrary-length message to one field element."""
    if isinstance(message, int):
        return to_field(message)
    if isinstance(message, str):
        message = message.encode("utf-8")
    return to_field(hashlib.sha256(message).digest())


# ── Orchestrator ─────────────────────────────────────────────────────────────


class ProofOrchestrator:
    """Builds circuit requests and submits them to the external prover."""

    def __init__(
        self,
        settings: ShadowSettings,
        ledger: NoteLedger,
        accumulator: MerkleAccumulator,
        prover: Prover,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.accumulator = accumulator
        self.prover = prover

    def build_transfer_request(
        self,
        note: Note,
        recipient: int | bytes | str,
        amount: int,
        *,
        nonce: bytes | None = None,
    ) -> TransferCircuitInputs:
        """Inputs proving ownership of ``note`` and committing ``amount`` to ``recipient``.

        ``nonce`` fixes the new commitment's nonce, e.g. to match a change
        note created beforehand.
        """
        if isinstance(amount, bool) or not 0 <= amount <= MAX_AMOUNT:
            raise InvalidAmountError(f"amount must be a u64, got {amount!r}")
        current = self.ledger.get_note(note.commitment) or note
        if current.leaf_index is None:
            raise NoteNotConfirmedError(
                f"note {fingerprint(current.commitment)} has no leaf index yet"
            )
        path = self.accumulator.proof(current.leaf_index)
        if path.leaf != current.commitment_value:
            raise StorageError(
                f"accumulator leaf {current.leaf_index} does not hold note {fingerprint(current.commitment)}"
            )

        nonce = nonce or random_secret()
        new_commitment = scheme.commitment(recipient, amount, nonce)
        return TransferCircuitInputs(
            public={
                "root": path.root,
                "nullifier": current.nullifier_value,
                "newCommitment": new_commitment,
            },
            private={
                "amount": amount,
                "privateKey": to_field(current.secret_bytes),
                "recipientPublicKey": to_field(recipient),
                "nonce": to_field(nonce),
                "oldNonce": to_field(current.nonce_bytes),
                "pathElements": path.path_elements,
                "pathIndices": path.path_indices,
            },
            new_nonce=nonce.hex(),
        )

    def build_balance_request(
        self,
        owner: str,
        min_balance: int,
        *,
        secret: bytes | None = None,
    ) -> BalanceCircuitInputs:
        """Inputs proving ``owner`` holds at least ``min_balance`` without revealing it.

        Without an explicit ``secret`` a fresh blinding secret is drawn.
        """
        if isinstance(min_balance, bool) or not 0 <= min_balance <= MAX_AMOUNT:
            raise InvalidAmountError(f"minimum balance must be a u64, got {min_balance!r}")
        actual = self.ledger.balance(owner)
        if actual < min_balance:
            raise InsufficientBalanceError(
                f"balance of {owner!r} is below the requested minimum {min_balance}"
            )
        nonce = random_secret()
        return BalanceCircuitInputs(
            public={
                "minBalance": min_balance,
                "balanceCommitment": scheme.commitment(owner, actual, nonce),
            },
            private={
                "actualBalance": actual,
                "balanceNonce": to_field(nonce),
                "privateKey": to_field(secret or random_secret()),
            },
        )

    def build_ring_request(
        self,
        secret: bytes,
        key_image: int,
        ring_members: list[int | bytes],
        message: bytes | int | str,
    ) -> RingCircuitInputs:
        """Inputs for a ring-signature spend over exactly ``ring_size`` members.

        Short rings are padded with fresh random field elements and the
        whole ring is shuffled, so neither the padding count nor the
        signer's position is visible from the member list.
        """
        if key_image != scheme.key_image(secret):
            raise InvalidKeyImageError("key image does not belong to the signing secret")
        size = self.settings.ring_size
        members = [to_field(m) for m in ring_members]
        if not members:
            raise InvalidRingSizeError("a ring needs at least one member")
        if len(members) > size:
            raise InvalidRingSizeError(f"ring has {len(members)} members, maximum is {size}")

        padding = size - len(members)
        members.extend(random_field_element() for _ in range(padding))
        secrets.SystemRandom().shuffle(members)
        if padding:
            logger.debug("Padded ring with %d dummy members", padding)

        return RingCircuitInputs(
            public={
                "keyImage": key_image,
                "ringMembers": members,
                "message": message_to_field(message),
            },
            private={"privateKey": to_field(secret)},
        )

    def sample_ring_members(self, own_commitment: int) -> list[int]:
        """Own commitment plus up to ``ring_size - 1`` uniformly drawn decoys."""
        decoys = self.accumulator.sample_decoys(
            self.settings.ring_size - 1,
            exclude={own_commitment},
            recent_exclusion=self.settings.decoy_recent_exclusion,
        )
        return [*decoys, own_commitment]

    async def submit(self, request: CircuitInputs, timeout: float | None = None) -> ProofResult:
        """Run the external prover. Failures surface as :class:`ProofError`."""
        timeout = timeout if timeout is not None else self.settings.proof_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.prover.prove(request.circuit, request.to_prover_input()),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProofTimeoutError(
                f"{request.circuit.value} proof did not finish within {timeout:.0f}s"
            ) from exc
        except ProofError:
            raise
        except Exception as exc:
            raise ProofError(f"{request.circuit.value} prover failed: {exc}") from exc
        logger.info("Received %s proof (%d bytes)", request.circuit.value, len(result.proof))
        return result
