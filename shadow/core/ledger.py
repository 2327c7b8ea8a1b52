"""Note ledger: creation, confirmation, single-spend and balance.

All mutations go through :class:`NoteLedger`. Spends follow a ticket
protocol::

    ticket = ledger.begin_spend(note)      # exclusive reservation
    ...prove and forward, no ledger lock held...
    ledger.commit_spend(ticket, ref)       # or ledger.abort_spend(ticket)

``begin_spend``, ``commit_spend`` and ``abort_spend`` are linearizable per
note (keyed by commitment). ``commit_spend`` re-checks the nullifier set
immediately before marking the note spent.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable

from . import commitment as scheme
from .commitment import MAX_AMOUNT, field_to_hex, random_secret
from .config import ShadowSettings
from .errors import (
    AlreadyReservedOrSpentError,
    DoubleSpendError,
    InsufficientBalanceError,
    InvalidAmountError,
    NoteNotConfirmedError,
    NoteNotFoundError,
)
from .locks import KeyedLock
from .logging import fingerprint
from .merkle import MerkleAccumulator
from .storage import describe_store
from .types import Note, NotePersistence, NoteState, SpendTicket, utcnow

logger = logging.getLogger(__name__)


def _check_amount(amount: int, *, allow_zero: bool = False) -> None:
    low = 0 if allow_zero else 1
    if isinstance(amount, bool) or not isinstance(amount, int) or not low <= amount <= MAX_AMOUNT:
        raise InvalidAmountError(f"amount must be an integer in [{low}, {MAX_AMOUNT}], got {amount!r}")


class NoteLedger:
    """Owns the note set and the spent-nullifier set.

    Args:
        settings: Engine settings (ticket TTL is read from here).
        accumulator: Tree that receives commitments on confirmation.
        persistence: Optional note sink written after every mutation.
        clock: Monotonic clock used to age spend tickets.
    """

    def __init__(
        self,
        settings: ShadowSettings,
        accumulator: MerkleAccumulator,
        persistence: NotePersistence | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.accumulator = accumulator
        self._persistence = persistence
        self._clock = clock

        self._notes: dict[str, Note] = {}
        self._reservations: dict[str, SpendTicket] = {}
        self._nullifiers: set[str] = set()

        self._registry_lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._note_locks = KeyedLock()

    # ── Loading / persistence ────────────────────────────────────────────

    def load(self) -> int:
        """Replace in-memory state with the persisted note set.

        The nullifier set is rebuilt from spent notes. Reservations are not
        persisted, so every loaded note starts unreserved.
        """
        if self._persistence is None:
            return 0
        notes = self._persistence.load_notes()
        with self._registry_lock:
            self._notes = {note.commitment: note for note in notes}
            self._nullifiers = {note.nullifier for note in notes if note.spent}
            self._reservations.clear()
        logger.info(
            "Loaded %d notes (%d spent) from %s",
            len(notes),
            len(self._nullifiers),
            describe_store(self._persistence),
        )
        return len(notes)

    def _persist(self) -> None:
        if self._persistence is None:
            return
        with self._persist_lock:
            with self._registry_lock:
                snapshot = list(self._notes.values())
            self._persistence.save_notes(snapshot)

    def _replace(self, note: Note, **changes) -> Note:
        updated = note.model_copy(update=changes)
        with self._registry_lock:
            self._notes[note.commitment] = updated
        return updated

    def _require(self, commitment: str) -> Note:
        with self._registry_lock:
            note = self._notes.get(commitment)
        if note is None:
            raise NoteNotFoundError(f"no note with commitment {fingerprint(commitment)}")
        return note

    # ── Creation / confirmation ──────────────────────────────────────────

    def _new_note(self, amount: int, owner: str, parent: str | None = None) -> Note:
        if not owner:
            raise ValueError("owner label must not be empty")
        secret = random_secret()
        nonce = random_secret()
        commitment_value = scheme.commitment(owner, amount, nonce)
        note = Note(
            commitment=field_to_hex(commitment_value),
            nullifier=field_to_hex(scheme.nullifier(commitment_value, secret)),
            amount=amount,
            secret=secret.hex(),
            nonce=nonce.hex(),
            owner=owner,
            parent_commitment=parent,
        )
        with self._registry_lock:
            self._notes[note.commitment] = note
        self._persist()
        logger.info("Created note %s for %d units", fingerprint(note.commitment), amount)
        return note

    def create_note(self, amount: int, owner: str) -> Note:
        """Create an unconfirmed note. It is not placed in the accumulator yet."""
        _check_amount(amount)
        return self._new_note(amount, owner)

    def create_change_note(self, parent: Note, change_amount: int, owner: str | None = None) -> Note:
        """Create the remainder note for a partial spend of ``parent``."""
        _check_amount(change_amount)
        current = self._require(parent.commitment)
        if change_amount >= current.amount:
            raise InvalidAmountError(
                f"change {change_amount} must be smaller than the parent note's {current.amount}"
            )
        return self._new_note(change_amount, owner or current.owner, parent=current.commitment)

    def confirm_note(self, commitment: str, confirmation_ref: str) -> Note:
        """Place a note's commitment in the accumulator and mark it active.

        Confirming an already-confirmed note is a no-op.
        """
        with self._note_locks.hold(commitment):
            note = self._require(commitment)
            if note.confirmed:
                if note.confirmation_ref != confirmation_ref:
                    logger.warning(
                        "Note %s already confirmed by a different reference",
                        fingerprint(commitment),
                    )
                return note
            leaf_index = self.accumulator.insert(note.commitment_value)
            note = self._replace(note, leaf_index=leaf_index, confirmation_ref=confirmation_ref)
        self._persist()
        logger.info("Confirmed note %s at leaf %d", fingerprint(commitment), leaf_index)
        return note

    def discard_note(self, commitment: str) -> bool:
        """Drop a note whose issuing transaction never confirmed."""
        with self._note_locks.hold(commitment):
            with self._registry_lock:
                note = self._notes.get(commitment)
                if note is None or note.confirmed:
                    return False
                del self._notes[commitment]
        self._persist()
        logger.info("Discarded unconfirmed note %s", fingerprint(commitment))
        return True

    # ── Selection / spend protocol ───────────────────────────────────────

    def _is_available(self, note: Note) -> bool:
        return note.confirmed and not note.spent and note.commitment not in self._reservations

    def select_spendable(self, owner: str, amount: int) -> Note:
        """Pick the smallest single active note of ``owner`` covering ``amount``."""
        _check_amount(amount)
        with self._registry_lock:
            candidates = [
                note
                for note in self._notes.values()
                if note.owner == owner and self._is_available(note) and note.amount >= amount
            ]
        if not candidates:
            raise InsufficientBalanceError(
                f"no single active note of {owner!r} covers {amount} "
                f"(spendable balance {self.balance(owner)})"
            )
        return min(candidates, key=lambda n: (n.amount, n.created_at))

    def begin_spend(self, note: Note) -> SpendTicket:
        """Reserve ``note`` exclusively for one spend attempt."""
        with self._note_locks.hold(note.commitment):
            current = self._require(note.commitment)
            if not current.confirmed:
                raise NoteNotConfirmedError(
                    f"note {fingerprint(current.commitment)} is not confirmed and cannot be spent yet"
                )
            with self._registry_lock:
                if current.spent or current.nullifier in self._nullifiers:
                    raise AlreadyReservedOrSpentError(
                        f"note {fingerprint(current.commitment)} is already spent"
                    )
                if current.commitment in self._reservations:
                    raise AlreadyReservedOrSpentError(
                        f"note {fingerprint(current.commitment)} is reserved by another spend"
                    )
                ticket = SpendTicket(
                    ticket_id=uuid.uuid4().hex,
                    commitment=current.commitment,
                    nullifier=current.nullifier,
                    owner=current.owner,
                    amount=current.amount,
                    issued_at=self._clock(),
                )
                self._reservations[current.commitment] = ticket
        logger.debug("Reserved note %s", fingerprint(note.commitment))
        return ticket

    def commit_spend(self, ticket: SpendTicket, confirmation_ref: str) -> Note:
        """Mark the ticket's note spent and record its nullifier.

        ``confirmation_ref`` means the spend landed on the host ledger, so a
        ticket that expired while in flight is still honoured unless another
        ticket has since reserved the note.
        """
        with self._note_locks.hold(ticket.commitment):
            note = self._require(ticket.commitment)
            with self._registry_lock:
                if ticket.nullifier in self._nullifiers:
                    raise DoubleSpendError(
                        f"nullifier {fingerprint(ticket.nullifier)} has already been spent"
                    )
                held = self._reservations.get(ticket.commitment)
                if held is not None and held.ticket_id != ticket.ticket_id:
                    raise AlreadyReservedOrSpentError(
                        f"ticket for note {fingerprint(ticket.commitment)} is no longer valid"
                    )
                if held is None:
                    logger.warning(
                        "Committing expired ticket for note %s after confirmation",
                        fingerprint(ticket.commitment),
                    )
                self._nullifiers.add(ticket.nullifier)
                self._reservations.pop(ticket.commitment, None)
                note = self._replace(
                    note, spent=True, spent_ref=confirmation_ref, spent_at=utcnow()
                )
        self._persist()
        logger.info("Spent note %s", fingerprint(ticket.commitment))
        return note

    def abort_spend(self, ticket: SpendTicket) -> bool:
        """Release a reservation. Returns False if the ticket was already resolved."""
        with self._note_locks.hold(ticket.commitment):
            with self._registry_lock:
                held = self._reservations.get(ticket.commitment)
                if held is None or held.ticket_id != ticket.ticket_id:
                    return False
                del self._reservations[ticket.commitment]
        logger.info("Aborted spend of note %s", fingerprint(ticket.commitment))
        return True

    def sweep_expired(self, now: float | None = None) -> list[SpendTicket]:
        """Abort every ticket older than the configured TTL."""
        now = self._clock() if now is None else now
        ttl = self.settings.spend_ticket_ttl_seconds
        with self._registry_lock:
            expired = [t for t in self._reservations.values() if now - t.issued_at >= ttl]
        aborted = [ticket for ticket in expired if self.abort_spend(ticket)]
        if aborted:
            logger.warning("Swept %d expired spend tickets", len(aborted))
        return aborted

    # ── Queries ──────────────────────────────────────────────────────────

    def balance(self, owner: str) -> int:
        """Sum over active, unspent, unreserved notes of ``owner``."""
        with self._registry_lock:
            return sum(
                note.amount
                for note in self._notes.values()
                if note.owner == owner and self._is_available(note)
            )

    def state_of(self, commitment: str) -> NoteState:
        note = self._require(commitment)
        with self._registry_lock:
            if note.spent:
                return NoteState.SPENT
            if commitment in self._reservations:
                return NoteState.RESERVED
        return NoteState.ACTIVE if note.confirmed else NoteState.PENDING

    def get_note(self, commitment: str) -> Note | None:
        with self._registry_lock:
            return self._notes.get(commitment)

    def unspent_notes(self, owner: str | None = None) -> list[Note]:
        with self._registry_lock:
            return [
                note
                for note in self._notes.values()
                if not note.spent and (owner is None or note.owner == owner)
            ]

    def all_notes(self) -> list[Note]:
        with self._registry_lock:
            return list(self._notes.values())

    @property
    def note_count(self) -> int:
        with self._registry_lock:
            return len(self._notes)

    @property
    def spent_count(self) -> int:
        with self._registry_lock:
            return len(self._nullifiers)

    @property
    def pending_tickets(self) -> int:
        with self._registry_lock:
            return len(self._reservations)

    def is_nullifier_used(self, nullifier: str) -> bool:
        with self._registry_lock:
            return nullifier in self._nullifiers

    def export(self) -> list[Note]:
        return self.all_notes()

    def import_(self, notes: Iterable[Note]) -> int:
        """Merge notes from a backup, skipping commitments already present."""
        added = 0
        with self._registry_lock:
            for note in notes:
                if note.commitment in self._notes:
                    continue
                self._notes[note.commitment] = note
                if note.spent:
                    self._nullifiers.add(note.nullifier)
                added += 1
        if added:
            self._persist()
        logger.info("Imported %d notes", added)
        return added
