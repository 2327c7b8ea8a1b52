"""Pool-level flows: deposit, withdraw, private transfer and balance proofs.

Every spend follows the same shape::

    select -> begin_spend -> build request -> prove (with timeout)
           -> forward -> commit_spend

Any failure after ``begin_spend`` aborts the ticket and discards notes the
attempt created, so a spend never half-succeeds.
"""

from __future__ import annotations

import logging
import os
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shadow.core import commitment as scheme
from shadow.core.commitment import field_to_bytes
from shadow.core.config import ShadowSettings
from shadow.core.errors import InvalidAmountError
from shadow.core.instructions import Deposit, InitializePool, PrivateTransfer, VerifyBalance, Withdraw
from shadow.core.ledger import NoteLedger
from shadow.core.logging import fingerprint
from shadow.core.signer import AccountMeta, Signer, UnsignedTransaction, decode_address, encode_address
from shadow.core.types import LedgerClient, Note, ProofResult, SpendTicket
from shadow.integrations.relayer_client import RelayerClient
from shadow.pipeline.orchestrator import ProofOrchestrator

logger = logging.getLogger(__name__)

_AMOUNT_NONCE_SIZE = 12


def encrypt_amount(amount: int, note: Note) -> bytes:
    """Encrypt an amount for the holder of ``note``'s secret: nonce || ciphertext."""
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=bytes.fromhex(note.commitment),
        info=b"shadow-encrypted-amount",
    ).derive(note.secret_bytes)
    nonce = os.urandom(_AMOUNT_NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, struct.pack("<Q", amount), None)


def decrypt_amount(blob: bytes, note: Note) -> int:
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=bytes.fromhex(note.commitment),
        info=b"shadow-encrypted-amount",
    ).derive(note.secret_bytes)
    plaintext = AESGCM(key).decrypt(blob[:_AMOUNT_NONCE_SIZE], blob[_AMOUNT_NONCE_SIZE:], None)
    return struct.unpack("<Q", plaintext)[0]


@dataclass
class BalanceProof:
    proof: ProofResult
    instruction: bytes


class ShieldedPool:
    """Drives one pool account through the ledger, prover and host ledger.

    Args:
        settings: Engine settings.
        ledger: Local note ledger.
        orchestrator: Proof request builder and prover front-end.
        ledger_client: Host-ledger client for direct submission.
        signer: Fee payer for direct submissions.
        pool_address: Base58 address of the pool account.
        relayer: Optional relayer client for ``withdraw_via_relayer``.
        tree_path: Where to persist the accumulator after confirmations.
    """

    def __init__(
        self,
        settings: ShadowSettings,
        ledger: NoteLedger,
        orchestrator: ProofOrchestrator,
        ledger_client: LedgerClient,
        signer: Signer,
        pool_address: str,
        *,
        relayer: RelayerClient | None = None,
        tree_path: Path | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.ledger_client = ledger_client
        self.signer = signer
        self.pool_address = pool_address
        self.pool_key = decode_address(pool_address)
        self.program_id = decode_address(settings.program_id)
        self.relayer = relayer
        self.tree_path = tree_path

    # ── Helpers ──────────────────────────────────────────────────────────

    def _transaction(self, data: bytes, *extra: AccountMeta) -> UnsignedTransaction:
        payer = self.signer.public_key()
        return UnsignedTransaction(
            fee_payer=payer,
            program_id=self.program_id,
            accounts=[
                AccountMeta(pubkey=self.pool_key, is_writable=True),
                *extra,
                AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            ],
            data=data,
        )

    async def _submit(self, data: bytes, *extra: AccountMeta) -> str:
        return await self.ledger_client.submit(self._transaction(data, *extra), self.signer)

    def _save_tree(self) -> None:
        if self.tree_path is not None:
            self.ledger.accumulator.save(self.tree_path)

    def _confirm(self, notes: list[Note | None], confirmation_ref: str) -> None:
        for note in notes:
            if note is not None:
                self.ledger.confirm_note(note.commitment, confirmation_ref)
        self._save_tree()

    def _rollback(self, ticket: SpendTicket, created: list[Note | None]) -> None:
        self.ledger.abort_spend(ticket)
        for note in created:
            if note is not None:
                self.ledger.discard_note(note.commitment)

    # ── Pool setup / deposit ─────────────────────────────────────────────

    async def initialize_pool(self, denomination: int | None = None) -> str:
        instruction = InitializePool(
            depth=self.settings.merkle_tree_depth,
            denomination=denomination if denomination is not None else self.settings.denomination,
        )
        signature = await self._submit(instruction.encode())
        logger.info("Initialized pool %s", self.pool_address)
        return signature

    async def deposit(self, amount: int, owner: str) -> Note:
        """Create a note, submit its commitment and confirm it on success.

        If submission fails the note stays unconfirmed and unspendable.
        """
        note = self.ledger.create_note(amount, owner)
        instruction = Deposit(commitment=field_to_bytes(note.commitment_value), amount=amount)
        signature = await self._submit(instruction.encode())
        self._confirm([note], signature)
        return self.ledger.get_note(note.commitment) or note

    # ── Withdraw ─────────────────────────────────────────────────────────

    async def _withdraw(
        self,
        owner: str,
        amount: int,
        recipient: bytes,
        forward: Callable[[bytes, Note], Awaitable[str]],
    ) -> str:
        note = self.ledger.select_spendable(owner, amount)
        ticket = self.ledger.begin_spend(note)
        change: Note | None = None
        try:
            remainder = note.amount - amount
            if remainder:
                change = self.ledger.create_change_note(note, remainder)
                request = self.orchestrator.build_transfer_request(
                    note, note.owner, remainder, nonce=change.nonce_bytes
                )
            else:
                request = self.orchestrator.build_transfer_request(note, note.owner, 0)
            result = await self.orchestrator.submit(request)
            instruction = Withdraw(
                proof=result.proof,
                root=field_to_bytes(request.root),
                nullifier=field_to_bytes(request.nullifier),
                new_commitment=field_to_bytes(request.new_commitment),
                recipient=recipient,
                amount=amount,
            )
            signature = await forward(instruction.encode(), note)
        except BaseException:
            self._rollback(ticket, [change])
            raise

        self.ledger.commit_spend(ticket, signature)
        self._confirm([change], signature)
        logger.info("Withdrew %d units from note %s", amount, fingerprint(note.commitment))
        return signature

    async def withdraw(self, owner: str, amount: int, recipient: bytes) -> str:
        """Withdraw directly, paying the fee from this pool's signer."""

        async def forward(data: bytes, _note: Note) -> str:
            return await self._submit(data, AccountMeta(pubkey=recipient, is_writable=True))

        return await self._withdraw(owner, amount, recipient, forward)

    async def withdraw_via_relayer(self, owner: str, amount: int, recipient: bytes) -> str:
        """Withdraw through the relayer so the recipient is not linked to the payer."""
        if self.relayer is None:
            raise RuntimeError("no relayer client configured")
        relayer = self.relayer

        async def forward(data: bytes, note: Note) -> str:
            return await relayer.relay_withdraw(
                pool_address=self.pool_address,
                instruction=data,
                recipient=encode_address(recipient),
                amount=amount,
                nullifier=note.nullifier,
            )

        return await self._withdraw(owner, amount, recipient, forward)

    # ── Private transfer ─────────────────────────────────────────────────

    async def private_transfer(self, owner: str, amount: int, to_owner: str) -> Note:
        """Re-issue one whole note to ``to_owner`` under a ring signature.

        The transfer instruction carries a single output commitment, so the
        selected note must match ``amount`` exactly.
        """
        note = self.ledger.select_spendable(owner, amount)
        if note.amount != amount:
            raise InvalidAmountError(
                f"private transfers move a whole note; smallest covering note holds {note.amount}"
            )
        ticket = self.ledger.begin_spend(note)
        issued: Note | None = None
        try:
            issued = self.ledger.create_note(amount, to_owner)
            secret = note.secret_bytes
            image = scheme.key_image(secret)
            members = self.orchestrator.sample_ring_members(note.commitment_value)
            request = self.orchestrator.build_ring_request(
                secret, image, members, field_to_bytes(issued.commitment_value)
            )
            result = await self.orchestrator.submit(request)
            instruction = PrivateTransfer(
                ring_signature=result.proof,
                key_image=field_to_bytes(image),
                ring_members=[field_to_bytes(m) for m in request.ring_members],
                new_commitment=field_to_bytes(issued.commitment_value),
                encrypted_amount=encrypt_amount(amount, issued),
            )
            signature = await self._submit(instruction.encode())
        except BaseException:
            self._rollback(ticket, [issued])
            raise

        self.ledger.commit_spend(ticket, signature)
        self._confirm([issued], signature)
        logger.info("Transferred note %s privately", fingerprint(note.commitment))
        return self.ledger.get_note(issued.commitment) or issued

    # ── Balance proof / maintenance ──────────────────────────────────────

    async def prove_balance(self, owner: str, min_balance: int) -> BalanceProof:
        request = self.orchestrator.build_balance_request(owner, min_balance)
        result = await self.orchestrator.submit(request)
        instruction = VerifyBalance(
            proof=result.proof,
            min_balance=min_balance,
            balance_commitment=field_to_bytes(request.balance_commitment),
        )
        return BalanceProof(proof=result, instruction=instruction.encode())

    def sweep_expired_tickets(self) -> int:
        return len(self.ledger.sweep_expired())

